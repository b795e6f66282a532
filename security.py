"""
Session tokens and the per-route authorization chain.

Every protected route runs ``get_identity`` (token check) and, where it
declares an allow-list, ``require_roles`` (role check). Roles are looked up
on every request instead of being read from the token, so a role change
takes effect without a new login.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from config import Settings
from database import Database, get_database
from errors import Forbidden, Unauthorized
from schemas import Role

logger = logging.getLogger("towertrack.security")

security = HTTPBearer(auto_error=False)


class InvalidToken(Exception):
    """Raised when a session token is absent, malformed, tampered or expired."""


@dataclass(frozen=True)
class IdentityClaim:
    email: str
    name: Optional[str] = None


@dataclass(frozen=True)
class Principal:
    claim: IdentityClaim
    role: Role

    @property
    def email(self) -> str:
        return self.claim.email


# ---------------------- Token codec ----------------------

class SessionTokenCodec:
    def __init__(self, secret: str, algorithm: str = "HS256", expires_min: int = 7 * 24 * 60):
        self.secret = secret
        self.algorithm = algorithm
        self.lifetime = timedelta(minutes=expires_min)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionTokenCodec":
        return cls(settings.jwt_secret, settings.jwt_alg, settings.jwt_expires_min)

    def issue(self, claim: IdentityClaim, expires_delta: Optional[timedelta] = None) -> str:
        now = datetime.now(timezone.utc)
        to_encode: Dict[str, Any] = {
            "email": claim.email,
            "iat": now,
            "exp": now + (expires_delta if expires_delta is not None else self.lifetime),
        }
        if claim.name:
            to_encode["name"] = claim.name
        return jwt.encode(to_encode, self.secret, algorithm=self.algorithm)

    def verify(self, token: Optional[str]) -> IdentityClaim:
        if not token:
            raise InvalidToken("Missing token")
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError as exc:
            raise InvalidToken("Token expired") from exc
        except JWTError as exc:
            raise InvalidToken("Invalid token") from exc
        email = payload.get("email")
        if not email or not isinstance(email, str):
            raise InvalidToken("Token carries no identity")
        return IdentityClaim(email=email, name=payload.get("name"))


def get_token_codec(request: Request) -> SessionTokenCodec:
    return request.app.state.token_codec


# ---------------------- Credential transport ----------------------

def set_session_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        key=settings.cookie_name,
        value=token,
        max_age=settings.jwt_expires_min * 60,
        httponly=True,
        secure=settings.is_production,
        samesite="none" if settings.is_production else "lax",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.cookie_name,
        httponly=True,
        secure=settings.is_production,
        samesite="none" if settings.is_production else "lax",
    )


def extract_credentials(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> List[str]:
    """Return the presented credentials, cookie first and bearer header second."""
    tokens = []
    cookie = request.cookies.get(request.app.state.settings.cookie_name)
    if cookie:
        tokens.append(cookie)
    if credentials is not None and credentials.scheme.lower() == "bearer" and credentials.credentials:
        tokens.append(credentials.credentials)
    return tokens


# ---------------------- Role store ----------------------

def resolve_role(database: Database, email: str) -> Role:
    user = database.users.find_one({"email": email}, {"role": 1})
    raw = (user or {}).get("role") or Role.USER.value
    try:
        return Role(raw)
    except ValueError:
        logger.warning("Unknown role %r stored for %s, treating as user", raw, email)
        return Role.USER


# ---------------------- Middleware chain ----------------------

async def get_identity(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    codec: SessionTokenCodec = Depends(get_token_codec),
) -> IdentityClaim:
    tokens = extract_credentials(request, credentials)
    if not tokens:
        raise Unauthorized()
    error = None
    for token in tokens:
        try:
            return codec.verify(token)
        except InvalidToken as exc:
            error = exc
    logger.info("Rejected session credential on %s: %s", request.url.path, error)
    raise Forbidden() from error


def is_permitted(role: Role, allowed: Iterable[Role]) -> bool:
    return role in frozenset(allowed)


def require_roles(*allowed: Role):
    allowed_set = frozenset(allowed)
    label = " or ".join(sorted(r.value for r in allowed_set))

    def dep(
        claim: IdentityClaim = Depends(get_identity),
        database: Database = Depends(get_database),
    ) -> Principal:
        role = resolve_role(database, claim.email)
        if not is_permitted(role, allowed_set):
            raise Forbidden(f"Forbidden: {label} only")
        return Principal(claim=claim, role=role)

    return dep


require_admin = require_roles(Role.ADMIN)
require_tenant = require_roles(Role.MEMBER, Role.USER)
require_any_role = require_roles(Role.ADMIN, Role.MEMBER, Role.USER)
