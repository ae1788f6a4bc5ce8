import asyncio

import httpx
import pytest

from app.models.api.login_request import ConfirmLoginRequest
from app.services.login.confirmation_service import CallerContext
from app.services.login.errors import (
    InvalidOrExpiredTokenError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    ValidationError,
)
from app.services.login.exchange_service import ExchangeService
from app.services.login.identity_service import derive_credential
from app.services.supabase_admin import SupabaseAdminClient


async def _confirm(confirmation, token, chat_id=12345, username="alice"):
    payload = ConfirmLoginRequest(token=token, chat_id=chat_id, username=username, first_name="Alice")
    return await confirmation.confirm(payload, CallerContext(ip_address="203.0.113.7"))


@pytest.mark.asyncio
async def test_unconfirmed_token_is_pending(registry, exchange, clock):
    record = await registry.create_token()

    for _ in range(5):
        result = await exchange.check_status(record.token)
        assert result == {"status": "pending"}
        clock.advance(minutes=1)


@pytest.mark.asyncio
async def test_unknown_token_is_pending(exchange, new_token):
    """Polling before registration lands is a recoverable race."""
    assert await exchange.check_status(new_token()) == {"status": "pending"}


@pytest.mark.asyncio
async def test_malformed_token_is_rejected(exchange):
    with pytest.raises(ValidationError) as exc:
        await exchange.check_status("login_not_a_token")

    assert exc.value.to_body() == {"error": "Invalid token format"}


@pytest.mark.asyncio
async def test_confirmed_token_delivered_once(registry, confirmation, exchange, clock, audit):
    # t=0 create, t=2min confirm, t=3min drain, t=3min+1s replay
    record = await registry.create_token()
    clock.advance(minutes=2)
    confirmed = await _confirm(confirmation, record.token)
    clock.advance(minutes=1)

    result = await exchange.check_status(record.token)

    assert result["status"] == "complete"
    assert result["user_id"] == confirmed["user_id"]
    assert result["email"] == "tg-12345@telegram-auth.com"
    assert result["secure_password"] == derive_credential(12345)
    assert result["login_link_token"] == "hashed-tg-12345@telegram-auth.com"
    assert result["telegram_data"] == {"chat_id": 12345, "username": "alice", "first_name": "Alice"}
    assert [e["action"] for e in audit.events if e["type"] == "login"] == [
        "telegram_login_confirmed",
        "telegram_login_exchanged",
    ]

    clock.advance(seconds=1)
    with pytest.raises(TokenAlreadyUsedError) as exc:
        await exchange.check_status(record.token)
    assert exc.value.to_body() == {"error": "Token already used", "status": "used"}


@pytest.mark.asyncio
async def test_every_later_poll_reports_used(registry, confirmation, exchange):
    record = await registry.create_token()
    await _confirm(confirmation, record.token)
    await exchange.check_status(record.token)

    for _ in range(3):
        with pytest.raises(TokenAlreadyUsedError):
            await exchange.check_status(record.token)


@pytest.mark.asyncio
async def test_concurrent_polls_deliver_once(registry, confirmation, exchange):
    record = await registry.create_token()
    await _confirm(confirmation, record.token)

    results = await asyncio.gather(
        exchange.check_status(record.token),
        exchange.check_status(record.token),
        return_exceptions=True,
    )

    completes = [r for r in results if isinstance(r, dict) and r["status"] == "complete"]
    others = [r for r in results if r not in completes]
    assert len(completes) == 1
    assert len(others) == 1
    assert isinstance(others[0], TokenAlreadyUsedError) or others[0] == {"status": "pending"}


@pytest.mark.asyncio
async def test_expired_token_is_removed_then_reported_gone(registry, exchange, token_repo, clock):
    record = await registry.create_token()
    clock.advance(minutes=21)

    with pytest.raises(TokenExpiredError) as exc:
        await exchange.check_status(record.token)
    assert exc.value.to_body() == {"error": "Token expired", "status": "expired"}
    assert record.token not in token_repo.rows

    with pytest.raises(InvalidOrExpiredTokenError) as exc:
        await exchange.check_status(record.token)
    assert exc.value.to_body() == {"error": "Invalid or expired token", "status": "expired"}


@pytest.mark.asyncio
async def test_over_age_token_expires_even_if_expiry_is_later(registry, exchange, token_repo, clock):
    record = await registry.create_token()
    token_repo.rows[record.token] = record.model_copy(
        update={"expires_at": record.expires_at + (record.expires_at - record.created_at)}
    )
    clock.advance(minutes=20)

    with pytest.raises(TokenExpiredError):
        await exchange.check_status(record.token)
    assert record.token not in token_repo.rows


@pytest.mark.asyncio
async def test_completed_but_expired_token_is_not_delivered(registry, confirmation, exchange, clock):
    record = await registry.create_token()
    await _confirm(confirmation, record.token)
    clock.advance(minutes=25)

    with pytest.raises(TokenExpiredError):
        await exchange.check_status(record.token)


@pytest.mark.asyncio
async def test_missing_credential_secret_still_delivers(monkeypatch, registry, confirmation, exchange):
    record = await registry.create_token()
    await _confirm(confirmation, record.token)
    monkeypatch.setattr("app.services.login.identity_service.settings.LOGIN_CREDENTIAL_SECRET", None)

    result = await exchange.check_status(record.token)

    assert result["status"] == "complete"
    assert result["secure_password"] is None
    assert result["login_link_token"]


@pytest.mark.asyncio
async def test_gateway_page_from_link_endpoint_still_delivers(
    registry, confirmation, token_repo, tombstones, audit, clock
):
    html_admin = SupabaseAdminClient(
        base_url="https://testproject.supabase.co/auth/v1/admin",
        service_role_key="service-key",
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, text="<html>gateway</html>", headers={"content-type": "text/html"})
        ),
    )
    exchange = ExchangeService(
        repository=token_repo,
        admin=html_admin,
        tombstones=tombstones,
        audit=audit,
        clock=clock,
        max_age_seconds=1200,
    )
    record = await registry.create_token()
    await _confirm(confirmation, record.token)

    result = await exchange.check_status(record.token)

    assert result["status"] == "complete"
    assert result["secure_password"] == derive_credential(12345)
    assert "login_link_token" not in result
    assert token_repo.rows[record.token].used is True


@pytest.mark.asyncio
async def test_link_failure_after_burn_never_loses_payload(registry, confirmation, exchange, admin, monkeypatch):
    record = await registry.create_token()
    await _confirm(confirmation, record.token)

    async def _explode(email):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(admin, "generate_magic_link", _explode)

    result = await exchange.check_status(record.token)

    assert result["status"] == "complete"
    assert result["user_id"]
