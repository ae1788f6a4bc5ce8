import asyncio

import pytest

from app.db.helpers import DatabaseError
from app.models.api.login_request import ConfirmLoginRequest
from app.models.domain.login_domain import TokenStatus
from app.services.login.confirmation_service import CallerContext, ConfirmationService
from app.services.login.errors import (
    IdentityResolutionError,
    InvalidOrExpiredTokenError,
    MissingFieldsError,
    RateLimitedError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    ValidationError,
)
from app.services.login.exchange_service import ExchangeService
from app.services.login.token_registry import token_tombstones


def _payload(token, chat_id=12345, **extra):
    return ConfirmLoginRequest(token=token, chat_id=chat_id, username="alice", first_name="Alice", **extra)


def _caller(ip="203.0.113.7"):
    return CallerContext(ip_address=ip, user_agent="telegram-bot/1.0", request_id="req-1")


@pytest.mark.asyncio
async def test_confirm_marks_token_complete(registry, confirmation, token_repo, directory):
    record = await registry.create_token()

    result = await confirmation.confirm(_payload(record.token), _caller())

    assert result["success"] is True
    assert result["telegram_data"] == {"chat_id": 12345, "username": "alice", "first_name": "Alice"}
    stored = token_repo.rows[record.token]
    assert stored.status == TokenStatus.COMPLETE
    assert stored.used is False
    assert stored.identity.user_id == result["user_id"]
    assert stored.ip_address == "203.0.113.7"
    assert directory.profiles[result["user_id"]]["telegram_id"] == 12345


@pytest.mark.asyncio
async def test_unknown_token_is_rejected_without_creating_it(confirmation, token_repo, new_token):
    token = new_token()

    with pytest.raises(InvalidOrExpiredTokenError):
        await confirmation.confirm(_payload(token), _caller())

    assert token not in token_repo.rows


@pytest.mark.asyncio
async def test_second_confirmation_is_rejected(registry, confirmation, token_repo):
    record = await registry.create_token()
    first = await confirmation.confirm(_payload(record.token), _caller())

    with pytest.raises(TokenAlreadyUsedError):
        await confirmation.confirm(_payload(record.token, chat_id=999), _caller())

    # Still bound to the first identity
    assert token_repo.rows[record.token].identity.user_id == first["user_id"]
    assert token_repo.rows[record.token].channel.chat_id == 12345


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "token,chat_id",
    [(None, 12345), ("", 12345), ("x" * 48, None)],
)


async def test_missing_fields(confirmation, token, chat_id):
    with pytest.raises(MissingFieldsError):
        await confirmation.confirm(ConfirmLoginRequest(token=token, chat_id=chat_id), _caller())


@pytest.mark.asyncio
async def test_malformed_tokens_never_touch_the_store_or_limiter(confirmation, token_repo, rate_limiter):
    for i in range(20):
        with pytest.raises(ValidationError):
            await confirmation.confirm(_payload(f"login_bogus_{i}"), _caller())

    assert token_repo.rows == {}
    assert rate_limiter._windows == {}


@pytest.mark.asyncio
async def test_rate_limit_per_caller_and_chat(confirmation, audit, new_token):
    caller = _caller()
    for _ in range(10):
        with pytest.raises(InvalidOrExpiredTokenError):
            await confirmation.confirm(_payload(new_token()), caller)

    with pytest.raises(RateLimitedError) as exc:
        await confirmation.confirm(_payload(new_token()), caller)

    assert exc.value.http_status == 429
    assert exc.value.retry_after > 0
    assert caller.rate_limit_info["remaining"] == 0
    assert audit.events[-1]["event_type"] == "login_confirmation_rate_limited"

    # A different chat from the same IP has its own budget
    with pytest.raises(InvalidOrExpiredTokenError):
        await confirmation.confirm(_payload(new_token(), chat_id=777), _caller())


@pytest.mark.asyncio
async def test_expired_token_is_deleted(registry, confirmation, exchange, token_repo, clock):
    record = await registry.create_token()
    clock.advance(seconds=1200)

    with pytest.raises(TokenExpiredError):
        await confirmation.confirm(_payload(record.token), _caller())

    assert record.token not in token_repo.rows
    with pytest.raises(InvalidOrExpiredTokenError):
        await exchange.check_status(record.token)


@pytest.mark.asyncio
async def test_identity_failure_leaves_token_pending(registry, confirmation, token_repo, monkeypatch):
    record = await registry.create_token()

    async def _boom(channel):
        raise IdentityResolutionError()

    monkeypatch.setattr(confirmation.identity, "resolve", _boom)

    with pytest.raises(IdentityResolutionError):
        await confirmation.confirm(_payload(record.token), _caller())

    stored = token_repo.rows[record.token]
    assert stored.status == TokenStatus.PENDING
    assert stored.identity is None


@pytest.mark.asyncio
async def test_concurrent_confirmations_bind_once(registry, confirmation, token_repo):
    record = await registry.create_token()

    results = await asyncio.gather(
        confirmation.confirm(_payload(record.token), _caller()),
        confirmation.confirm(_payload(record.token), _caller()),
        return_exceptions=True,
    )

    successes = [r for r in results if isinstance(r, dict)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], TokenAlreadyUsedError)
    assert token_repo.rows[record.token].identity.user_id == successes[0]["user_id"]


@pytest.mark.asyncio
async def test_expiry_seen_by_confirm_is_visible_to_status_polls(
    monkeypatch, registry, token_repo, identity, rate_limiter, audit, admin, clock
):
    monkeypatch.setattr(token_tombstones, "redis", None)
    confirmer = ConfirmationService(
        repository=token_repo,
        identity=identity,
        rate_limiter=rate_limiter,
        audit=audit,
        clock=clock,
        max_age_seconds=1200,
    )
    poller = ExchangeService(repository=token_repo, admin=admin, audit=audit, clock=clock, max_age_seconds=1200)
    record = await registry.create_token()
    clock.advance(seconds=1300)

    with pytest.raises(TokenExpiredError):
        await confirmer.confirm(_payload(record.token), _caller())

    with pytest.raises(InvalidOrExpiredTokenError):
        await poller.check_status(record.token)


@pytest.mark.asyncio
async def test_profile_write_failure_does_not_block_confirmation(
    registry, confirmation, token_repo, directory, monkeypatch
):
    record = await registry.create_token()

    async def _fail(user_id, channel, now):
        raise DatabaseError('null value in column "username"', operation="fetch_one", recoverable=False)

    monkeypatch.setattr(directory, "upsert_profile", _fail)

    payload = ConfirmLoginRequest(token=record.token, chat_id=12345, first_name="Alice")

    result = await confirmation.confirm(payload, _caller())

    assert result["success"] is True
    stored = token_repo.rows[record.token]
    assert stored.status == TokenStatus.COMPLETE
    assert stored.identity.user_id == result["user_id"]


@pytest.mark.asyncio
async def test_two_tokens_from_same_chat_bind_same_user(registry, confirmation, directory):
    first, second = await registry.create_token(), await registry.create_token()

    confirmed_first = await confirmation.confirm(_payload(first.token), _caller())
    payload = ConfirmLoginRequest(token=second.token, chat_id=12345, username="alice2", first_name="Alice")
    confirmed_second = await confirmation.confirm(payload, _caller())

    assert confirmed_second["user_id"] == confirmed_first["user_id"]
    assert directory.profiles[confirmed_first["user_id"]]["username"] == "alice2"
