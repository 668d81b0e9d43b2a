"""
Shared fixtures for the API tests.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi.testclient import TestClient
from jose import jwt

from learnhub.app import create_app
from learnhub.auth import PrivyTokenVerifier
from learnhub.config import Settings
from learnhub.db import DbClient, InMemoryDbClient
from learnhub.dependencies import get_db_client, get_payments_client, get_token_verifier
from learnhub.payments import InMemoryPaymentsClient, PaymentsClient

APP_ID = "test-privy-app"
WEBHOOK_SECRET = "whsec_test_secret"


def make_settings(**overrides) -> Settings:
    values = {
        "database_url": "sqlite+pysqlite:///:memory:",
        "node_env": "test",
        "port": 5000,
        "stripe_secret_key": "sk_test_123",
        "VITE_PRIVY_APP_ID": APP_ID,
        "stripe_webhook_secret": WEBHOOK_SECRET,
        "stripe_price_id": "price_basic",
        "app_url": "http://localhost:5173",
        "LEARNHUB_USE_IN_MEMORY_BACKENDS": True,
        "rate_limit_max_requests": 0,
        "_env_file": None,
    }
    values.update(overrides)
    return Settings(**values)


class TokenFactory:
    """Issues ES256 tokens shaped like Privy access tokens."""

    def __init__(self, app_id: str = APP_ID):
        self.app_id = app_id
        key = ec.generate_private_key(ec.SECP256R1())
        self.private_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode("utf-8")
        self.public_pem = key.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("utf-8")

    def issue(
        self,
        subject: str = "did:privy:alice",
        *,
        audience: Optional[str] = None,
        issuer: str = "privy.io",
        expires_in: int = 3600,
        kid: Optional[str] = None,
    ) -> str:
        now = int(time.time())
        claims = {
            "sub": subject,
            "sid": "session-1",
            "iss": issuer,
            "aud": audience or self.app_id,
            "iat": now,
            "exp": now + expires_in,
        }
        headers = {"kid": kid} if kid else None
        return jwt.encode(claims, self.private_pem, algorithm="ES256", headers=headers)

    def verifier(self) -> PrivyTokenVerifier:
        return PrivyTokenVerifier(self.app_id, self.public_pem)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def build_client(
    settings: Optional[Settings] = None,
    *,
    db: Optional[DbClient] = None,
    payments: Optional[PaymentsClient] = None,
    tokens: Optional[TokenFactory] = None,
) -> TestClient:
    app = create_app(settings or make_settings())
    db = db if db is not None else InMemoryDbClient()
    payments = payments if payments is not None else InMemoryPaymentsClient()
    verifier = (tokens or TokenFactory()).verifier()
    app.dependency_overrides[get_db_client] = lambda: db
    app.dependency_overrides[get_payments_client] = lambda: payments
    app.dependency_overrides[get_token_verifier] = lambda: verifier
    return TestClient(app)
