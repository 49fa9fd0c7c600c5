"""Shared fixtures: configuration, signed payloads and mocked ledger store."""

import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from fanledger.config.settings import AppConfig
from fanledger.payments.provider import StripeGateway
from fanledger.payments.webhooks import WebhookContext

WEBHOOK_SECRET = "whsec_test_secret"


def make_signature_header(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header for a payload."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture
def config() -> AppConfig:
    """Valid configuration independent of the process environment."""
    return AppConfig(
        _env_file=None,
        env="dev",
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        DB_DSN="postgresql://ledger@localhost:5432/ledger",
        DB_SERVICE_PASSWORD="service-password",
    )


@pytest.fixture
def mock_conn() -> AsyncMock:
    """Connection mock; tests set fetchrow/execute return values."""
    return AsyncMock()


@pytest.fixture
def mock_pool(mock_conn) -> MagicMock:
    """Pool whose acquire() yields mock_conn (same pattern as asyncpg)."""
    pool = MagicMock()
    acquire = MagicMock()
    acquire.__aenter__.return_value = mock_conn
    acquire.__aexit__.return_value = None
    pool.acquire.return_value = acquire
    return pool


@pytest.fixture
def provider() -> AsyncMock:
    return AsyncMock(spec=StripeGateway)


@pytest.fixture
def ctx(config, mock_pool, provider) -> WebhookContext:
    return WebhookContext(config=config, pool=mock_pool, provider=provider)


@pytest.fixture
def signed_event():
    """Serialize an event dict and sign it with the test webhook secret."""

    def _sign(event: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, str]:
        payload = json.dumps(event).encode("utf-8")
        return payload, make_signature_header(payload, secret)

    return _sign
