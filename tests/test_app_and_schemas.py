import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from gatekeep import app as app_module
from gatekeep.api import schemas
from gatekeep.config import reset_settings_cache


def test_security_headers_and_cors():
    client = TestClient(app_module.app)
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["Content-Security-Policy"].startswith("default-src")
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert "X-New-Token" in response.headers["access-control-expose-headers"]


def test_allowed_origins_default(monkeypatch):
    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    reset_settings_cache()
    origins = app_module._allowed_origins()
    assert "http://localhost" in origins
    assert "http://127.0.0.1:5173" in origins


def test_allowed_origins_override(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://example.com, https://demo.local")
    reset_settings_cache()
    origins = app_module._allowed_origins()
    assert origins == ["https://example.com", "https://demo.local"]
    reset_settings_cache()


def test_register_request_normalizes_identifiers():
    req = schemas.RegisterRequest(
        username=" alice\u200b ", email=" Alice@X.com ", password="secret1"
    )

    assert req.username == "alice"
    assert req.email == "Alice@X.com"
    assert req.phone is None


def test_register_request_limits():
    with pytest.raises(ValidationError):
        schemas.RegisterRequest(username="alice", email="a@x.com", password="p" * 129)
    with pytest.raises(ValidationError):
        schemas.LoginRequest(identifier="", password="secret1")


def test_token_response_defaults():
    account = schemas.AccountResponse(
        id="acct-1",
        username="alice",
        email="alice@x.com",
        created_at="2026-01-05T12:00:00+00:00",
    )
    body = schemas.TokenResponse(
        token="t", expires_at="2026-01-12T12:00:00+00:00", account=account
    )

    dumped = body.model_dump()
    assert dumped["token_type"] == "bearer"
    assert dumped["account"]["role"] == "user"
    assert "password_hash" not in dumped["account"]
