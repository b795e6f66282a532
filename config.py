"""
Runtime configuration for the TowerTrack backend.

Values are read from the environment once, when the app is built.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

DEFAULT_JWT_SECRET = "super-secret-key-change-me"
DEFAULT_CORS_ORIGINS = [
    "https://towertrack-ph-assestwelve.netlify.app",
    "http://localhost:5173",
]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    app_env: str = "development"
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "towerTrackDB"

    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_alg: str = "HS256"
    jwt_expires_min: int = 7 * 24 * 60
    cookie_name: str = "token"

    cors_origins: List[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))

    stripe_secret_key: Optional[str] = None
    payment_currency: str = "bdt"

    firebase_project_id: Optional[str] = None
    reconcile_on_startup: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() in ("prod", "production")

    def validate(self) -> "Settings":
        if self.is_production and self.jwt_secret == DEFAULT_JWT_SECRET:
            raise ValueError("JWT_SECRET must be set in production")
        if self.jwt_expires_min <= 0:
            raise ValueError("JWT_EXPIRES_MIN must be positive")
        return self

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            app_env=os.getenv("APP_ENV", "development"),
            database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
            database_name=os.getenv("DATABASE_NAME", "towerTrackDB"),
            jwt_secret=os.getenv("JWT_SECRET", DEFAULT_JWT_SECRET),
            jwt_alg=os.getenv("JWT_ALG", "HS256"),
            jwt_expires_min=int(os.getenv("JWT_EXPIRES_MIN", str(7 * 24 * 60))),
            cors_origins=_env_list("CORS_ORIGINS", DEFAULT_CORS_ORIGINS),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
            payment_currency=os.getenv("PAYMENT_CURRENCY", "bdt"),
            firebase_project_id=os.getenv("FIREBASE_PROJECT_ID") or None,
            reconcile_on_startup=_env_bool("RECONCILE_ON_STARTUP", True),
        ).validate()
