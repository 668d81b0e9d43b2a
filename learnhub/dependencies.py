"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Cookie, Depends, Header, HTTPException, status

from learnhub.auth import AUTH_COOKIE_NAME, PrivyClaims, PrivyTokenVerifier, extract_token
from learnhub.config import Settings, get_settings
from learnhub.db import DbClient, InMemoryDbClient, PostgresDbClient, UserRecord
from learnhub.errors import AuthenticationError
from learnhub.payments import InMemoryPaymentsClient, PaymentsClient, StripePaymentsClient
from learnhub.ratelimit import InMemoryRateLimiter, RateLimiter, RedisRateLimiter

_db_client: DbClient | None = None
_payments_client: PaymentsClient | None = None
_token_verifier: PrivyTokenVerifier | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so the connection pool is shared across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends:
        _db_client = InMemoryDbClient()
    else:
        _db_client = PostgresDbClient(settings.database_url)
    return _db_client


def get_payments_client() -> PaymentsClient:
    global _payments_client
    if _payments_client:
        return _payments_client

    settings = get_settings()
    if settings.use_in_memory_backends:
        _payments_client = InMemoryPaymentsClient()
    else:
        _payments_client = StripePaymentsClient(secret_key=settings.stripe_secret_key)
    return _payments_client


def get_token_verifier() -> PrivyTokenVerifier:
    global _token_verifier
    if _token_verifier:
        return _token_verifier

    settings = get_settings()
    _token_verifier = PrivyTokenVerifier(
        settings.privy_app_id,
        settings.privy_verification_key,
        jwks_url=settings.privy_jwks_url,
    )
    return _token_verifier


def build_rate_limiter(settings: Settings) -> RateLimiter:
    if settings.redis_url:
        return RedisRateLimiter(
            url=settings.redis_url,
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )
    return InMemoryRateLimiter(
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )


def close_clients() -> None:
    """Release pooled connections; called on application shutdown."""
    global _db_client, _payments_client, _token_verifier
    if isinstance(_db_client, PostgresDbClient):
        _db_client.close()
    _db_client = None
    _payments_client = None
    _token_verifier = None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_claims(
    authorization: Optional[str] = Header(default=None),
    cookie_token: Optional[str] = Cookie(default=None, alias=AUTH_COOKIE_NAME),
    verifier: PrivyTokenVerifier = Depends(get_token_verifier),
) -> PrivyClaims:
    token = extract_token(authorization, cookie_token)
    if not token:
        raise _unauthorized("Not authenticated")
    try:
        return verifier.verify(token)
    except AuthenticationError as exc:
        raise _unauthorized(str(exc)) from exc


def get_current_user(
    claims: PrivyClaims = Depends(get_current_claims),
    db: DbClient = Depends(get_db_client),
) -> UserRecord:
    user = db.get_user_by_privy_id(claims.user_id)
    if user is None:
        raise _unauthorized("Unknown user, log in first")
    return user
