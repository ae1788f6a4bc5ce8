from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from app.config import settings
from app.main import app as main_app
from app.middleware.rate_limit_headers import RateLimitHeadersMiddleware
from app.routes import login
from app.services.login.errors import register_login_error_handlers

BOT_SECRET = settings.LOGIN_BOT_SHARED_SECRET


def test_rate_limit_headers_middleware():
    app = FastAPI()
    app.add_middleware(RateLimitHeadersMiddleware)

    @app.get("/limited")
    async def limited(request: Request):
        request.state.rate_limit_info = {
            "allowed": True,
            "limit": 10,
            "remaining": 9,
            "retry_after": 0,
        }
        return {"ok": True}

    client = TestClient(app)
    response = client.get("/limited")

    assert response.status_code == 200
    assert response.headers["X-RateLimit-Limit"] == "10"
    assert response.headers["X-RateLimit-Remaining"] == "9"
    assert "Retry-After" not in response.headers


def test_confirmation_rate_limit_blocks(confirmation, new_token):
    app = FastAPI()
    app.add_middleware(RateLimitHeadersMiddleware)
    app.include_router(login.router)
    register_login_error_handlers(app)
    app.dependency_overrides[login.get_confirmation_service] = lambda: confirmation

    client = TestClient(app)
    headers = {"X-Bot-Secret": BOT_SECRET}

    for _ in range(10):
        response = client.post(
            "/api/login/confirm", json={"token": new_token(), "chat_id": 55}, headers=headers
        )
        assert response.status_code == 400

    response = client.post(
        "/api/login/confirm", json={"token": new_token(), "chat_id": 55}, headers=headers
    )

    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) > 0
    assert response.headers["X-RateLimit-Remaining"] == "0"
    assert "error" in response.json()

    # Another chat id has its own window
    other = client.post(
        "/api/login/confirm", json={"token": new_token(), "chat_id": 56}, headers=headers
    )
    assert other.status_code == 400


def test_cors_preflight_for_login_client():
    client = TestClient(main_app)

    allowed = client.options(
        "/api/login/status",
        headers={"Origin": "http://localhost:3000", "Access-Control-Request-Method": "GET"},
    )
    rejected = client.options(
        "/api/login/status",
        headers={"Origin": "https://evil.example", "Access-Control-Request-Method": "GET"},
    )

    assert allowed.status_code == 204
    assert allowed.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"
    assert "GET" in allowed.headers["Access-Control-Allow-Methods"]
    assert rejected.status_code == 403
