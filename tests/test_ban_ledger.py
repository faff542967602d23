# tests/test_ban_ledger.py
from datetime import timedelta

import pytest
from sqlalchemy import select

from account_guard.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from account_guard.core.security import utcnow
from account_guard.db.session import AsyncSessionLocal
from account_guard.models.devices import TrustedDevice, UserDevice
from account_guard.models.security_logs import AdminAuditLog
from account_guard.models.users import User
from account_guard.services import ban_ledger, devices

pytestmark = pytest.mark.anyio


async def _fresh_user(user_id: int) -> User:
    async with AsyncSessionLocal() as s:
        return await s.get(User, user_id)


async def test_create_ban_marks_user_banned_and_bumps_token_version(db, make_user, admin):
    user = await make_user()
    ban = await ban_ledger.create_ban(db, actor_id=admin.id, user_id=user.id, reason="spam")

    fresh = await _fresh_user(user.id)
    assert fresh.status == "banned"
    assert fresh.token_version == user.token_version + 1
    assert ban.is_active and ban.is_permanent
    assert await ban_ledger.is_user_currently_banned(db, user.id)

    res = await db.execute(
        select(AdminAuditLog).where(AdminAuditLog.action == "ban.create", AdminAuditLog.target_id == str(user.id))
    )
    entry = res.scalar_one()
    assert entry.actor_id == admin.id
    assert entry.details["ban_id"] == ban.id


async def test_create_ban_revokes_trusted_devices(db, make_user, admin):
    user = await make_user()
    device = await devices.record_login(db, user.id, user_agent="Mozilla/5.0 Firefox/120.0", ip="10.0.0.8")
    await devices.mark_trusted(db, device.id, user_agent="Mozilla/5.0 Firefox/120.0", ip="10.0.0.8")

    await ban_ledger.create_ban(db, actor_id=admin.id, user_id=user.id, reason="abuse")

    res = await db.execute(select(TrustedDevice).where(TrustedDevice.user_id == user.id))
    assert res.scalars().all() == []
    async with AsyncSessionLocal() as s:
        assert (await s.get(UserDevice, device.id)).is_trusted is False


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"is_irrevocable": True, "admin_notes": "x", "expires_days": 1}, "permanent"),
        ({"is_irrevocable": True}, "admin notes"),
        ({"reason": "   "}, "reason"),
        ({"expires_days": -1}, "future"),
    ],
)
async def test_create_ban_validation(db, make_user, admin, kwargs, message):
    user = await make_user()
    now = utcnow()
    kwargs = dict(kwargs)
    days = kwargs.pop("expires_days", None)
    params = {"reason": "rule violation", **kwargs}
    if days is not None:
        params["expires_at"] = now + timedelta(days=days)

    with pytest.raises(ValidationError) as exc:
        await ban_ledger.create_ban(db, actor_id=admin.id, user_id=user.id, now=now, **params)
    assert message in exc.value.detail

    fresh = await _fresh_user(user.id)
    assert fresh.status == "active"


async def test_create_ban_requires_target_and_admin(db, make_user, admin):
    user = await make_user()
    with pytest.raises(ValidationError):
        await ban_ledger.create_ban(db, actor_id=admin.id, reason="no target")
    with pytest.raises(ValidationError):
        await ban_ledger.create_ban(db, actor_id=None, user_id=user.id, reason="no actor")

    moderator = await make_user(role="moderator")
    with pytest.raises(AuthorizationError):
        await ban_ledger.create_ban(db, actor_id=moderator.id, user_id=user.id, reason="not admin")


async def test_create_ban_unknown_user(db, admin):
    with pytest.raises(NotFoundError):
        await ban_ledger.create_ban(db, actor_id=admin.id, user_id=999_999, reason="ghost")


async def test_revoke_one_of_two_bans_keeps_user_banned(db, make_user, admin):
    user = await make_user()
    first = await ban_ledger.create_ban(db, actor_id=admin.id, user_id=user.id, reason="first")
    second = await ban_ledger.create_ban(
        db, actor_id=admin.id, user_id=user.id, reason="second", expires_at=utcnow() + timedelta(days=7)
    )

    await ban_ledger.revoke_ban(db, first.id, admin.id)
    assert (await _fresh_user(user.id)).status == "banned"

    await ban_ledger.revoke_ban(db, second.id, admin.id)
    assert (await _fresh_user(user.id)).status == "active"
    assert not await ban_ledger.is_user_currently_banned(db, user.id)

    history = await ban_ledger.get_ban_history(db, user.id)
    assert {b.id for b in history} == {first.id, second.id}
    assert all(b.revoked_by == admin.id for b in history)


async def test_irrevocable_ban_cannot_be_revoked_or_modified(db, make_user, admin):
    user = await make_user()
    ban = await ban_ledger.create_ban(
        db, actor_id=admin.id, user_id=user.id, reason="fraud",
        is_irrevocable=True, admin_notes="chargeback ring",
    )
    with pytest.raises(ConflictError):
        await ban_ledger.revoke_ban(db, ban.id, admin.id)
    with pytest.raises(ConflictError):
        await ban_ledger.modify_ban(db, ban.id, actor_id=admin.id, reason="x", expires_at=None)
    assert (await _fresh_user(user.id)).status == "banned"


async def test_revoke_twice_is_noop(db, make_user, admin):
    user = await make_user()
    ban = await ban_ledger.create_ban(db, actor_id=admin.id, user_id=user.id, reason="temp")
    revoked = await ban_ledger.revoke_ban(db, ban.id, admin.id)
    revoked_at = revoked.revoked_at
    again = await ban_ledger.revoke_ban(db, ban.id, admin.id)
    assert again.revoked_at == revoked_at


async def test_expired_ban_is_not_in_force(db, make_user, admin):
    user = await make_user()
    now = utcnow()
    ban = await ban_ledger.create_ban(
        db, actor_id=admin.id, user_id=user.id, reason="cool down",
        expires_at=now + timedelta(hours=1), now=now,
    )
    later = now + timedelta(hours=2)
    assert await ban_ledger.is_user_currently_banned(db, user.id, now)
    assert not await ban_ledger.is_user_currently_banned(db, user.id, later)
    assert await ban_ledger.get_current_ban(db, user.id, later) is None

    # 排程清理把過期封鎖關掉
    assert await ban_ledger.deactivate_expired_bans(db, later) >= 1
    await db.refresh(ban)
    assert ban.is_active is False


async def test_modify_ban_changes_expiry(db, make_user, admin):
    user = await make_user()
    now = utcnow()
    ban = await ban_ledger.create_ban(db, actor_id=admin.id, user_id=user.id, reason="first", now=now)
    new_expiry = now + timedelta(days=3)
    updated = await ban_ledger.modify_ban(
        db, ban.id, actor_id=admin.id, reason="reduced", expires_at=new_expiry, now=now
    )
    assert updated.expires_at == new_expiry
    assert updated.reason == "reduced"
    assert (await _fresh_user(user.id)).status == "banned"


async def test_ip_ban_uses_last_login_ip(db, make_user, admin):
    user = await make_user(last_login_ip="203.0.113.7")
    ban = await ban_ledger.create_ban(db, actor_id=admin.id, user_id=user.id, reason="ban evasion", ip_ban=True)
    assert ban.ip_ban and ban.ip_address == "203.0.113.7"
    assert await ban_ledger.is_ip_banned(db, "203.0.113.7")
    assert not await ban_ledger.is_ip_banned(db, "203.0.113.8")


async def test_ip_only_ban(db, admin):
    ban = await ban_ledger.create_ban(db, actor_id=admin.id, ip_address="198.51.100.23", reason="scraper")
    assert ban.user_id is None
    assert ban.ip_ban is True
    assert await ban_ledger.is_ip_banned(db, "198.51.100.23")


def test_calculate_ban_expiration():
    now = utcnow()
    assert ban_ledger.calculate_ban_expiration("permanent", now=now) is None
    assert ban_ledger.calculate_ban_expiration(None, now=now) is None
    assert ban_ledger.calculate_ban_expiration("1_week", now=now) == now + timedelta(weeks=1)
    custom = now + timedelta(days=2)
    assert ban_ledger.calculate_ban_expiration("custom", custom, now) == custom
    with pytest.raises(ValidationError):
        ban_ledger.calculate_ban_expiration("custom", None, now)
    with pytest.raises(ValidationError):
        ban_ledger.calculate_ban_expiration("2_weeks", now=now)


class TestAppealUrlToken:
    async def test_rotation_invalidates_previous_token(self, db, make_user, admin):
        user = await make_user()
        ban = await ban_ledger.create_ban(db, actor_id=admin.id, user_id=user.id, reason="spam")

        first = await ban_ledger.issue_appeal_url_token(db, ban.id)
        assert (await ban_ledger.validate_appeal_url_token(db, first)).id == ban.id

        second = await ban_ledger.issue_appeal_url_token(db, ban.id)
        with pytest.raises(NotFoundError):
            await ban_ledger.validate_appeal_url_token(db, first)
        assert (await ban_ledger.validate_appeal_url_token(db, second)).id == ban.id

        await db.refresh(ban)
        # 只存 hash
        assert ban.appeal_url_token != second and len(ban.appeal_url_token) == 64

    async def test_expired_and_unknown_tokens_share_one_error(self, db, make_user, admin):
        user = await make_user()
        now = utcnow()
        ban = await ban_ledger.create_ban(db, actor_id=admin.id, user_id=user.id, reason="spam", now=now)
        raw = await ban_ledger.issue_appeal_url_token(db, ban.id, now)

        with pytest.raises(NotFoundError) as expired:
            await ban_ledger.validate_appeal_url_token(db, raw, now + timedelta(hours=73))
        with pytest.raises(NotFoundError) as unknown:
            await ban_ledger.validate_appeal_url_token(db, "not-a-real-token", now)
        assert expired.value.detail == unknown.value.detail == ban_ledger.INVALID_APPEAL_LINK

    async def test_revoked_ban_link_stops_working(self, db, make_user, admin):
        user = await make_user()
        ban = await ban_ledger.create_ban(db, actor_id=admin.id, user_id=user.id, reason="spam")
        raw = await ban_ledger.issue_appeal_url_token(db, ban.id)
        await ban_ledger.revoke_ban(db, ban.id, admin.id)
        with pytest.raises(NotFoundError):
            await ban_ledger.validate_appeal_url_token(db, raw)

    async def test_irrevocable_ban_has_no_appeal_link(self, db, make_user, admin):
        user = await make_user()
        ban = await ban_ledger.create_ban(
            db, actor_id=admin.id, user_id=user.id, reason="fraud",
            is_irrevocable=True, admin_notes="confirmed",
        )
        with pytest.raises(ConflictError):
            await ban_ledger.issue_appeal_url_token(db, ban.id)
