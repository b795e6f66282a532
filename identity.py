"""
Exchange a Firebase ID token for a local identity claim.

Signature, audience, issuer and expiry checks are done against the
provider's published signing keys; nothing here decides trust on its own.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional, Sequence

import httpx
from jose import JWTError, jwt

from security import IdentityClaim

logger = logging.getLogger("towertrack.identity")

FIREBASE_JWKS_URL = "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com"
KEY_CACHE_SECONDS = 3600


class InvalidExternalToken(Exception):
    """The identity provider rejected the presented token."""


class IdentityProviderUnavailable(Exception):
    """The provider's signing keys could not be fetched."""


def fetch_signing_keys(url: str = FIREBASE_JWKS_URL) -> Dict[str, Any]:
    try:
        response = httpx.get(url, timeout=10.0)
        response.raise_for_status()
        return response.json()
    except (httpx.HTTPError, ValueError) as exc:
        raise IdentityProviderUnavailable(str(exc)) from exc


class IdentityBridge:
    def __init__(
        self,
        project_id: str,
        key_source: Callable[[], Dict[str, Any]] = fetch_signing_keys,
        algorithms: Sequence[str] = ("RS256",),
    ):
        self.project_id = project_id
        self.issuer = f"https://securetoken.google.com/{project_id}"
        self.key_source = key_source
        self.algorithms = list(algorithms)
        self._keys: Optional[Dict[str, Any]] = None
        self._fetched_at = 0.0

    def _signing_keys(self) -> Dict[str, Any]:
        if self._keys is None or time.monotonic() - self._fetched_at > KEY_CACHE_SECONDS:
            self._keys = self.key_source()
            self._fetched_at = time.monotonic()
        return self._keys

    def exchange(self, external_token: str) -> IdentityClaim:
        if not external_token:
            raise InvalidExternalToken("Missing identity token")
        try:
            payload = jwt.decode(
                external_token,
                self._signing_keys(),
                algorithms=self.algorithms,
                audience=self.project_id,
                issuer=self.issuer,
            )
        except JWTError as exc:
            logger.info("Identity provider token rejected: %s", exc)
            raise InvalidExternalToken(str(exc)) from exc

        email = payload.get("email")
        if not email:
            raise InvalidExternalToken("Identity token carries no email")
        if payload.get("email_verified") is False:
            raise InvalidExternalToken("Email address not verified")
        return IdentityClaim(email=email, name=payload.get("name"))
