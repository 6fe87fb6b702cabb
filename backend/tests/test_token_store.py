"""Refresh token store: issue, rotate, revoke, cleanup against the test database."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from doccontrol.config import settings
from doccontrol.core.auth import hash_refresh_token
from doccontrol.core.results import AuthErrorCode, Rejected
from doccontrol.core.roles import Role
from doccontrol.db.session import async_session_maker
from doccontrol.models.refresh_token import RefreshToken
from doccontrol.models.user import User
from doccontrol.models.user_session import UserSession
from doccontrol.services.cleanup import check_cron_secret, run_token_cleanup
from doccontrol.services.sessions import SessionCoordinator
from doccontrol.services.token_store import IssuedRefreshToken


async def _count(model, *conditions) -> int:
    async with async_session_maker() as session:
        return await session.scalar(select(func.count()).select_from(model).where(*conditions))


@pytest.mark.asyncio
async def test_create_stores_only_hash_and_opens_session(store, make_user):
    user = await make_user(role=Role.ADMIN)
    issued = await store.create(user.id, "laptop", ip_address="10.0.0.1", user_agent="pytest")
    assert isinstance(issued, IssuedRefreshToken)
    assert issued.role == Role.ADMIN
    assert issued.device_id == "laptop"
    async with async_session_maker() as session:
        row = (await session.execute(select(RefreshToken))).scalar_one()
        assert row.token_hash == hash_refresh_token(issued.value)
        assert row.token_hash != issued.value
        assert row.session_id == issued.session_id
        sess = await session.get(UserSession, issued.session_id)
        assert sess.ip_address == "10.0.0.1"
        assert sess.user_agent == "pytest"
        assert sess.expires_at == issued.expires_at


@pytest.mark.asyncio
async def test_create_for_unknown_user_raises(store):
    with pytest.raises(LookupError):
        await store.create(12345)


@pytest.mark.asyncio
async def test_rotate_consumes_old_token(store, make_user):
    user = await make_user()
    first = await store.create(user.id, "phone")
    second = await store.rotate(first.value)
    assert isinstance(second, IssuedRefreshToken)
    assert second.value != first.value
    assert second.user_id == user.id
    assert second.session_id == first.session_id
    assert second.device_id == "phone"

    reused = await store.rotate(first.value)
    assert isinstance(reused, Rejected)
    assert reused.code == AuthErrorCode.INVALID_REFRESH_TOKEN
    assert await _count(RefreshToken) == 1


@pytest.mark.asyncio
async def test_rotate_overrides_device_when_given(store, make_user):
    user = await make_user()
    first = await store.create(user.id, "old-device")
    second = await store.rotate(first.value, "new-device")
    assert second.device_id == "new-device"


@pytest.mark.asyncio
@pytest.mark.parametrize("value", ["", "   ", "never-issued"])
async def test_rotate_unknown_value_is_rejected(store, make_user, value):
    await make_user()
    result = await store.rotate(value)
    assert isinstance(result, Rejected)
    assert result.code == AuthErrorCode.INVALID_REFRESH_TOKEN


@pytest.mark.asyncio
async def test_rotate_expired_token_is_rejected(store, make_user):
    user = await make_user()
    issued_at = datetime.now(timezone.utc) - timedelta(days=settings.refresh_token_expire_days, seconds=1)
    issued = await store.create(user.id, now=issued_at)
    result = await store.rotate(issued.value)
    assert isinstance(result, Rejected)


@pytest.mark.asyncio
async def test_rotate_for_inactive_user_is_rejected(store, make_user):
    user = await make_user()
    issued = await store.create(user.id)
    async with async_session_maker() as session:
        db_user = await session.get(User, user.id)
        db_user.is_active = False
        await session.commit()
    result = await store.rotate(issued.value)
    assert isinstance(result, Rejected)
    assert result.code == AuthErrorCode.INVALID_REFRESH_TOKEN


@pytest.mark.asyncio
async def test_concurrent_rotation_succeeds_once(store, make_user):
    user = await make_user()
    issued = await store.create(user.id)
    results = await asyncio.gather(store.rotate(issued.value), store.rotate(issued.value))
    successes = [r for r in results if isinstance(r, IssuedRefreshToken)]
    failures = [r for r in results if isinstance(r, Rejected)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert await _count(RefreshToken, RefreshToken.user_id == user.id) == 1


@pytest.mark.asyncio
async def test_many_concurrent_rotations_succeed_once(store, make_user):
    user = await make_user()
    issued = await store.create(user.id)
    results = await asyncio.gather(*[store.rotate(issued.value) for _ in range(8)])
    successes = [r for r in results if isinstance(r, IssuedRefreshToken)]
    assert len(successes) == 1
    assert isinstance(await store.rotate(successes[0].value), IssuedRefreshToken)


@pytest.mark.asyncio
async def test_rotation_racing_logout_all_leaves_no_usable_token(store, make_user):
    user = await make_user()
    issued = await store.create(user.id)
    rotated, report = await asyncio.gather(
        store.rotate(issued.value),
        SessionCoordinator(store).logout_all(user.id),
    )
    if isinstance(rotated, IssuedRefreshToken):
        # Rotation went first; logout-all then removed its replacement
        assert report.refresh_tokens == 1
        assert isinstance(await store.rotate(rotated.value), Rejected)
    else:
        assert rotated.code == AuthErrorCode.INVALID_REFRESH_TOKEN
    assert isinstance(await store.rotate(issued.value), Rejected)
    assert await _count(RefreshToken, RefreshToken.user_id == user.id) == 0
    assert await _count(UserSession, UserSession.user_id == user.id) == 0


@pytest.mark.asyncio
async def test_logout_current_without_session_or_token_warns(store, make_user, caplog):
    user = await make_user()
    issued = await store.create(user.id)
    with caplog.at_level("WARNING", logger="doccontrol.services.sessions"):
        report = await SessionCoordinator(store).logout_current(user.id, None, None)
    assert (report.refresh_tokens, report.sessions) == (0, 0)
    assert "revoked nothing" in caplog.text
    # Nothing identified the device, so its refresh token is untouched
    assert isinstance(await store.rotate(issued.value), IssuedRefreshToken)


@pytest.mark.asyncio
async def test_revoke_is_idempotent(store, make_user):
    user = await make_user()
    issued = await store.create(user.id)
    assert await store.revoke(issued.value) is True
    assert await store.revoke(issued.value) is False
    assert await store.revoke("never-issued") is False
    assert isinstance(await store.rotate(issued.value), Rejected)


@pytest.mark.asyncio
async def test_revoke_scoped_to_owner(store, make_user):
    alice = await make_user("alice@test.com")
    bob = await make_user("bob@test.com")
    issued = await store.create(alice.id)
    assert await store.revoke(issued.value, user_id=bob.id) is False
    assert isinstance(await store.rotate(issued.value), IssuedRefreshToken)


@pytest.mark.asyncio
async def test_revoke_all_blocks_every_token(store, make_user):
    user = await make_user()
    other = await make_user("other@test.com")
    tokens = [await store.create(user.id, f"device-{i}") for i in range(3)]
    kept = await store.create(other.id)

    report = await store.revoke_all_for_user(user.id)
    assert report.refresh_tokens == 3
    assert report.sessions == 3
    for issued in tokens:
        assert isinstance(await store.rotate(issued.value), Rejected)
    assert isinstance(await store.rotate(kept.value), IssuedRefreshToken)

    again = await store.revoke_all_for_user(user.id)
    assert (again.refresh_tokens, again.sessions) == (0, 0)


@pytest.mark.asyncio
async def test_revoke_session_leaves_other_sessions(store, make_user):
    user = await make_user()
    laptop = await store.create(user.id, "laptop")
    phone = await store.create(user.id, "phone")
    report = await store.revoke_session(laptop.session_id, user_id=user.id)
    assert (report.refresh_tokens, report.sessions) == (1, 1)
    assert isinstance(await store.rotate(laptop.value), Rejected)
    assert isinstance(await store.rotate(phone.value), IssuedRefreshToken)


@pytest.mark.asyncio
async def test_coordinator_logout_current_and_all(store, make_user):
    user = await make_user()
    coordinator = SessionCoordinator(store)
    a = await store.create(user.id, "a")
    b = await store.create(user.id, "b")
    c = await store.create(user.id, "c")

    report = await coordinator.logout_current(user.id, a.session_id, b.value)
    assert report.refresh_tokens == 2
    assert report.sessions == 1
    assert isinstance(await store.rotate(a.value), Rejected)
    assert isinstance(await store.rotate(b.value), Rejected)

    report = await coordinator.logout_all(user.id)
    assert report.refresh_tokens == 1
    assert isinstance(await store.rotate(c.value), Rejected)
    assert await _count(UserSession, UserSession.user_id == user.id) == 0


@pytest.mark.asyncio
async def test_cleanup_expired_and_old_tokens(store, make_user):
    user = await make_user()
    now = datetime.now(timezone.utc)
    expired = await store.create(user.id, "expired", now=now - timedelta(days=settings.refresh_token_expire_days + 1))
    with patch.object(settings, "refresh_token_expire_days", 365):
        old = await store.create(user.id, "old", now=now - timedelta(days=settings.refresh_token_max_age_days + 10))
    fresh = await store.create(user.id, "fresh", now=now)

    report = await store.cleanup_expired(now=now)
    assert report.expired_refresh_tokens == 1
    assert report.old_refresh_tokens == 1
    assert report.expired_sessions == 1

    assert isinstance(await store.rotate(expired.value), Rejected)
    assert isinstance(await store.rotate(old.value), Rejected)
    assert isinstance(await store.rotate(fresh.value), IssuedRefreshToken)


@pytest.mark.asyncio
async def test_cleanup_is_idempotent(store, make_user):
    user = await make_user()
    now = datetime.now(timezone.utc)
    await store.create(user.id, now=now - timedelta(days=settings.refresh_token_expire_days + 1))
    first = await run_token_cleanup(store)
    assert first.expired_refresh_tokens == 1
    second = await run_token_cleanup(store)
    assert (second.expired_refresh_tokens, second.old_refresh_tokens, second.expired_sessions) == (0, 0, 0)


@pytest.mark.asyncio
async def test_list_sessions_only_active(store, make_user):
    alice = await make_user("alice@test.com")
    bob = await make_user("bob@test.com")
    now = datetime.now(timezone.utc)
    await store.create(alice.id, "a1", now=now - timedelta(minutes=2))
    await store.create(alice.id, "a2", now=now - timedelta(minutes=1))
    await store.create(bob.id, "b1", now=now)
    await store.create(bob.id, "stale", now=now - timedelta(days=settings.refresh_token_expire_days + 1))

    items, total = await store.list_sessions(now=now)
    assert total == 3
    assert [s.device_id for s in items] == ["b1", "a2", "a1"]

    items, total = await store.list_sessions(alice.id, limit=1, offset=1, now=now)
    assert total == 2
    assert [s.device_id for s in items] == ["a1"]


def test_check_cron_secret():
    assert check_cron_secret("Bearer s3cret", "s3cret") is None
    assert check_cron_secret("Bearer wrong", "s3cret").code == AuthErrorCode.UNAUTHORIZED
    assert check_cron_secret(None, "s3cret").code == AuthErrorCode.UNAUTHORIZED
    assert check_cron_secret("Bearer ", "").code == AuthErrorCode.CONFIGURATION
