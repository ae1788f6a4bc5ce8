from datetime import timedelta

import pytest

from app.models.domain.login_domain import TOKEN_LENGTH, TokenStatus, is_valid_token_format
from app.services.login.errors import ValidationError
from app.services.login.token_registry import TokenTombstones, validate_token_format


def test_generated_tokens_are_canonical(new_token):
    tokens = {new_token() for _ in range(50)}

    assert len(tokens) == 50
    assert all(len(t) == TOKEN_LENGTH and is_valid_token_format(t) for t in tokens)


@pytest.mark.parametrize(
    "token",
    [
        None,
        "",
        "short",
        "login_123e4567-e89b-12d3-a456-426614174000_1700000000000",
        "a" * 47,
        "a" * 49,
        "a" * 47 + "!",
    ],
)
def test_validate_token_format_rejects_malformed(token):
    with pytest.raises(ValidationError):
        validate_token_format(token)


@pytest.mark.asyncio
async def test_create_token_persists_pending_record(registry, token_repo, clock):
    record = await registry.create_token()

    stored = token_repo.rows[record.token]
    assert stored.status == TokenStatus.PENDING
    assert stored.used is False
    assert stored.created_at == clock.now
    assert stored.expires_at == clock.now + timedelta(seconds=1200)


@pytest.mark.asyncio
async def test_register_token_is_idempotent(registry, token_repo, clock, new_token):
    token = new_token()

    first, created = await registry.register_token(token)
    clock.advance(seconds=30)
    second, created_again = await registry.register_token(token)

    assert created is True
    assert created_again is False
    # The original expiry is kept, not pushed out by the second call
    assert second.expires_at == first.expires_at
    assert len(token_repo.rows) == 1


@pytest.mark.asyncio
async def test_register_token_rejects_bad_format(registry, token_repo):
    with pytest.raises(ValidationError):
        await registry.register_token("login_abc_123")

    assert token_repo.rows == {}


@pytest.mark.asyncio
async def test_tombstones_in_redis(fake_redis, new_token):
    tombstones = TokenTombstones(redis=fake_redis, ttl_seconds=1200)
    token = new_token()

    assert await tombstones.is_buried(token) is False
    await tombstones.bury(token)

    assert await tombstones.is_buried(token) is True
    # Stored under a digest, never the raw token
    assert all(token not in key for key in fake_redis.store)
    assert list(fake_redis.ttls.values()) == [1200]


@pytest.mark.asyncio
async def test_tombstones_in_memory_expire(monkeypatch, new_token):
    monkeypatch.setattr("app.services.login.token_registry.settings.REDIS_URL", None)
    now = [100.0]
    tombstones = TokenTombstones(ttl_seconds=60, clock=lambda: now[0])
    token = new_token()

    await tombstones.bury(token)
    assert await tombstones.is_buried(token) is True

    now[0] += 61
    assert await tombstones.is_buried(token) is False


@pytest.mark.asyncio
async def test_in_memory_tombstones_are_pruned_on_bury(monkeypatch, new_token):
    monkeypatch.setattr("app.services.login.token_registry.settings.REDIS_URL", None)
    now = [100.0]
    tombstones = TokenTombstones(ttl_seconds=60, clock=lambda: now[0])
    stale, fresh = new_token(), new_token()

    await tombstones.bury(stale)
    now[0] += 61
    await tombstones.bury(fresh)

    assert len(tombstones._local) == 1
    assert await tombstones.is_buried(fresh) is True
