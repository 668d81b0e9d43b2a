"""
Verification of Privy access tokens.

Privy signs access tokens as ES256 JWTs. The issuer is always ``privy.io``,
the audience is the Privy app id and ``sub`` holds the user's Privy DID.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

import requests
from jose import JWTError, jwt

from learnhub.errors import AuthenticationError

logger = logging.getLogger(__name__)

PRIVY_ISSUER = "privy.io"
PRIVY_ALGORITHM = "ES256"
PRIVY_JWKS_URL = "https://auth.privy.io/api/v1/apps/{app_id}/jwks.json"
REQUEST_TIMEOUT = 10  # seconds

AUTH_COOKIE_NAME = "privy-token"


@dataclass(frozen=True)
class PrivyClaims:
    user_id: str
    session_id: Optional[str]
    issued_at: Optional[int]
    expires_at: Optional[int]


def _fetch_jwks(url: str) -> dict:
    response = requests.get(url, timeout=REQUEST_TIMEOUT)
    response.raise_for_status()
    return response.json()


class PrivyTokenVerifier:
    """
    Checks signature, issuer, audience and expiry of a Privy access token.

    A PEM verification key (from the Privy dashboard) is used when given;
    otherwise the app's JWKS document is fetched once and cached by ``kid``.
    """

    def __init__(
        self,
        app_id: str,
        verification_key: Optional[str] = None,
        *,
        jwks_url: Optional[str] = None,
        fetch_jwks: Callable[[str], dict] = _fetch_jwks,
    ):
        if not app_id:
            raise ValueError("Privy app id is required")
        self.app_id = app_id
        self.verification_key = verification_key
        self.jwks_url = jwks_url or PRIVY_JWKS_URL.format(app_id=app_id)
        self._fetch_jwks = fetch_jwks
        self._jwks: dict[str, dict] = {}
        self._lock = threading.Lock()

    def _jwk_for(self, kid: Optional[str], refresh: bool = False) -> dict:
        with self._lock:
            if refresh or not self._jwks:
                try:
                    document = self._fetch_jwks(self.jwks_url)
                except requests.RequestException as exc:
                    raise AuthenticationError(
                        f"Could not fetch Privy signing keys: {exc}"
                    ) from exc
                self._jwks = {
                    key.get("kid", ""): key for key in document.get("keys", [])
                }
            if kid and kid in self._jwks:
                return self._jwks[kid]
            if not kid and len(self._jwks) == 1:
                return next(iter(self._jwks.values()))
        if not refresh:
            # Keys rotate; retry once against a fresh document.
            return self._jwk_for(kid, refresh=True)
        raise AuthenticationError("Token signed with an unknown key")

    def _key_for(self, token: str):
        if self.verification_key:
            return self.verification_key
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise AuthenticationError(f"Malformed token: {exc}") from exc
        return self._jwk_for(header.get("kid"))

    def verify(self, token: str) -> PrivyClaims:
        if not token:
            raise AuthenticationError("Missing access token")
        key = self._key_for(token)
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=[PRIVY_ALGORITHM],
                audience=self.app_id,
                issuer=PRIVY_ISSUER,
            )
        except JWTError as exc:
            logger.info("Rejected Privy token: %s", exc)
            raise AuthenticationError(f"Invalid access token: {exc}") from exc

        subject = claims.get("sub")
        if not subject:
            raise AuthenticationError("Access token has no subject")
        return PrivyClaims(
            user_id=subject,
            session_id=claims.get("sid"),
            issued_at=claims.get("iat"),
            expires_at=claims.get("exp"),
        )


def extract_token(
    authorization: Optional[str], cookie_token: Optional[str]
) -> Optional[str]:
    """Prefer an ``Authorization: Bearer`` header, fall back to the cookie."""
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    return cookie_token or None
