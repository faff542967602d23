# tests/test_status_sync.py
import random
from datetime import timedelta

import pytest
from sqlalchemy import update

from account_guard.core.security import utcnow
from account_guard.db.session import AsyncSessionLocal
from account_guard.models.bans import UserBan
from account_guard.models.users import User
from account_guard.services import ban_ledger
from account_guard.services.maintenance import run_sweep
from account_guard.services.status_sync import synchronize_user_statuses

pytestmark = pytest.mark.anyio


async def _status(user_id: int) -> str:
    async with AsyncSessionLocal() as s:
        return (await s.get(User, user_id)).status


async def _force_status(user_id: int, status: str) -> None:
    """模擬 users.status 與封鎖紀錄不一致（例如手動改 DB）。"""
    async with AsyncSessionLocal() as s:
        await s.execute(update(User).where(User.id == user_id).values(status=status))
        await s.commit()


async def test_repairs_drift_in_both_directions(db, make_user, admin):
    banned = await make_user()
    clean = await make_user()
    await ban_ledger.create_ban(db, actor_id=admin.id, user_id=banned.id, reason="spam")

    await _force_status(banned.id, "active")
    await _force_status(clean.id, "banned")

    report = await synchronize_user_statuses(db, user_ids=[banned.id, clean.id])
    assert (report.banned, report.restored) == (1, 1)
    assert await _status(banned.id) == "banned"
    assert await _status(clean.id) == "active"


async def test_second_run_changes_nothing(db, make_user, admin):
    user = await make_user()
    await ban_ledger.create_ban(db, actor_id=admin.id, user_id=user.id, reason="spam")
    await _force_status(user.id, "active")

    first = await synchronize_user_statuses(db)
    second = await synchronize_user_statuses(db)
    assert first.changed >= 1
    assert second.changed == 0


async def test_expired_but_still_active_ban_restores_user(db, make_user, admin):
    user = await make_user()
    now = utcnow()
    await ban_ledger.create_ban(
        db, actor_id=admin.id, user_id=user.id, reason="cool down",
        expires_at=now + timedelta(minutes=10), now=now,
    )
    assert await _status(user.id) == "banned"

    # is_active 仍為 True，但已過期 → 視為未封鎖
    report = await synchronize_user_statuses(db, user_ids=[user.id], now=now + timedelta(minutes=11))
    assert report.restored == 1
    assert await _status(user.id) == "active"


async def test_ip_only_bans_do_not_touch_users(db, make_user, admin):
    user = await make_user()
    await ban_ledger.create_ban(db, actor_id=admin.id, ip_address="192.0.2.55", reason="proxy abuse")
    report = await synchronize_user_statuses(db, user_ids=[user.id])
    assert report.changed == 0
    assert await _status(user.id) == "active"


async def test_soft_deleted_users_are_skipped(db, make_user, admin):
    user = await make_user()
    await ban_ledger.create_ban(db, actor_id=admin.id, user_id=user.id, reason="spam")
    async with AsyncSessionLocal() as s:
        await s.execute(update(User).where(User.id == user.id).values(status="active", deleted_at=utcnow()))
        await s.commit()

    report = await synchronize_user_statuses(db, user_ids=[user.id])
    assert report.changed == 0
    assert await _status(user.id) == "active"


async def test_empty_scope_is_noop(db):
    report = await synchronize_user_statuses(db, user_ids=[])
    assert report.changed == 0


async def test_sweep_deactivates_expired_bans_and_resyncs(db, make_user, admin):
    user = await make_user()
    now = utcnow()
    ban = await ban_ledger.create_ban(
        db, actor_id=admin.id, user_id=user.id, reason="short",
        expires_at=now + timedelta(minutes=5), now=now,
    )

    result = await run_sweep(db, now=now + timedelta(minutes=6))
    assert result.expired_bans >= 1
    assert result.restored >= 1
    assert await _status(user.id) == "active"

    async with AsyncSessionLocal() as s:
        assert (await s.get(UserBan, ban.id)).is_active is False


@pytest.mark.parametrize("seed", [7, 42, 2024])
async def test_status_matches_ledger_for_random_histories(db, make_user, admin, seed):
    """隨機封鎖歷史（過期 / 未過期 / 永久 / 不可撤銷 / 已撤銷）同步後 status 與判定一致"""
    rng = random.Random(seed)
    now = utcnow()
    issued = now - timedelta(days=2)
    expiries = [None, now - timedelta(hours=1), now - timedelta(days=1), now + timedelta(hours=1), now + timedelta(days=3)]

    ids = []
    for _ in range(8):
        user = await make_user()
        ids.append(user.id)
        for _ in range(rng.randint(0, 3)):
            expires_at = rng.choice(expiries)
            irrevocable = expires_at is None and rng.random() < 0.25
            ban = await ban_ledger.create_ban(
                db,
                actor_id=admin.id,
                user_id=user.id,
                reason="random history",
                expires_at=expires_at,
                is_irrevocable=irrevocable,
                admin_notes="board decision" if irrevocable else None,
                now=issued,
            )
            if not irrevocable and rng.random() < 0.4:
                await ban_ledger.revoke_ban(db, ban.id, admin.id, now=issued + timedelta(minutes=5))
        if rng.random() < 0.5:
            await _force_status(user.id, rng.choice(["active", "banned"]))

    await synchronize_user_statuses(db, user_ids=ids, now=now)
    for user_id in ids:
        banned = await ban_ledger.is_user_currently_banned(db, user_id, now)
        assert (await _status(user_id) == "banned") is banned, user_id

    again = await synchronize_user_statuses(db, user_ids=ids, now=now)
    assert again.changed == 0
