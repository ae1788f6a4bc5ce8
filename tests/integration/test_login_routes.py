"""
End-to-end handshake through the HTTP surface, backed by in-memory fakes.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.config import settings
from app.middleware.rate_limit_headers import RateLimitHeadersMiddleware
from app.middleware.request_context import RequestContextMiddleware
from app.routes import login
from app.services.login.errors import register_login_error_handlers

BOT_SECRET = settings.LOGIN_BOT_SHARED_SECRET


@pytest.fixture
def client(registry, confirmation, exchange):
    app = FastAPI()
    app.add_middleware(RateLimitHeadersMiddleware)
    app.add_middleware(RequestContextMiddleware)
    app.include_router(login.router)
    register_login_error_handlers(app)

    app.dependency_overrides[login.get_token_registry] = lambda: registry
    app.dependency_overrides[login.get_confirmation_service] = lambda: confirmation
    app.dependency_overrides[login.get_exchange_service] = lambda: exchange

    return TestClient(app)


def _confirm(client, token, chat_id=12345, secret=BOT_SECRET):
    headers = {"X-Bot-Secret": secret} if secret else {}
    return client.post(
        "/api/login/confirm",
        json={"token": token, "chat_id": chat_id, "username": "alice", "first_name": "Alice"},
        headers=headers,
    )


def test_register_token_created_then_exists(client, new_token):
    token = new_token()

    first = client.post("/api/login/tokens", json={"token": token})
    second = client.post("/api/login/tokens", json={"token": token})

    assert first.status_code == 200
    assert first.json()["status"] == "created"
    assert first.json()["bot_link"].endswith(f"?start={token}")
    assert second.json()["status"] == "exists"
    assert second.json()["expires_at"] == first.json()["expires_at"]


def test_register_without_token_mints_one(client, token_repo):
    response = client.post("/api/login/tokens")

    assert response.status_code == 200
    assert response.json()["token"] in token_repo.rows


def test_register_rejects_malformed_token(client):
    response = client.post("/api/login/tokens", json={"token": "login_abc_123"})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid token format"}


def test_full_handshake(client, new_token):
    token = new_token()
    client.post("/api/login/tokens", json={"token": token})

    pending = client.get("/api/login/status", params={"token": token})
    assert pending.status_code == 200
    assert pending.json() == {"status": "pending"}

    confirmed = _confirm(client, token)
    assert confirmed.status_code == 200
    body = confirmed.json()
    assert body["success"] is True
    assert "secure_password" not in body
    assert confirmed.headers["X-RateLimit-Limit"] == "10"
    assert confirmed.headers["X-RateLimit-Remaining"] == "9"

    complete = client.get("/api/login/status", params={"token": token})
    assert complete.status_code == 200
    payload = complete.json()
    assert payload["status"] == "complete"
    assert payload["user_id"] == body["user_id"]
    assert payload["email"] == "tg-12345@telegram-auth.com"
    assert payload["secure_password"]
    assert payload["telegram_data"]["chat_id"] == 12345

    replay = client.get("/api/login/status", params={"token": token})
    assert replay.status_code == 400
    assert replay.json() == {"error": "Token already used", "status": "used"}


def test_status_requires_valid_token(client):
    assert client.get("/api/login/status").json() == {"error": "Invalid token format"}
    assert client.get("/api/login/status", params={"token": "x"}).status_code == 400


def test_status_expired(client, registry, clock, new_token):
    token = new_token()
    client.post("/api/login/tokens", json={"token": token})
    clock.advance(minutes=21)

    first = client.get("/api/login/status", params={"token": token})
    second = client.get("/api/login/status", params={"token": token})

    assert first.json() == {"error": "Token expired", "status": "expired"}
    assert second.json() == {"error": "Invalid or expired token", "status": "expired"}


def test_confirm_requires_bot_secret(client, new_token, token_repo):
    token = new_token()
    client.post("/api/login/tokens", json={"token": token})

    missing = _confirm(client, token, secret=None)
    wrong = _confirm(client, token, secret="not-the-secret")

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert wrong.json() == {"error": "Unauthorized"}
    assert token_repo.rows[token].identity is None


def test_confirm_without_configured_secret(client, monkeypatch, new_token):
    monkeypatch.setattr("app.auth.bot_secret.settings.LOGIN_BOT_SHARED_SECRET", None)

    response = _confirm(client, new_token())

    assert response.status_code == 500
    assert response.json() == {"error": "Server configuration error"}


def test_confirm_missing_fields(client):
    response = client.post("/api/login/confirm", json={}, headers={"X-Bot-Secret": BOT_SECRET})

    assert response.status_code == 400
    assert response.json()["error"].startswith("Missing required fields")


def test_confirm_invalid_body(client):
    response = client.post(
        "/api/login/confirm",
        json={"token": "t" * 48, "chat_id": "not-a-number"},
        headers={"X-Bot-Secret": BOT_SECRET},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid request body"}


def test_confirm_unknown_token(client, new_token):
    response = _confirm(client, new_token())

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid or expired token", "status": "expired"}


def test_confirm_twice(client, new_token):
    token = new_token()
    client.post("/api/login/tokens", json={"token": token})

    assert _confirm(client, token).status_code == 200
    again = _confirm(client, token, chat_id=999)

    assert again.status_code == 400
    assert again.json() == {"error": "Token already used", "status": "used"}
