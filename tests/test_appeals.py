# tests/test_appeals.py
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from account_guard.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from account_guard.core.security import generate_token, hash_token, utcnow
from account_guard.db.session import AsyncSessionLocal
from account_guard.models.appeals import BanAppeal
from account_guard.models.bans import UserBan
from account_guard.models.users import User
from account_guard.services import appeals, ban_ledger

pytestmark = pytest.mark.anyio

REASON = (
    "I was travelling and a family member used my laptop without permission. "
    "I have changed my password and enabled two factor authentication."
)
RESPONSE = "After reviewing the evidence we decided to keep the ban in place."


async def _banned_user(db, make_user, admin, **ban_kwargs):
    user = await make_user()
    ban = await ban_ledger.create_ban(db, actor_id=admin.id, user_id=user.id, reason="spam", **ban_kwargs)
    return user, ban


async def _submit(db, ban, user_id=None, **kwargs):
    params = {
        "ban_id": ban.id,
        "user_id": user_id if user_id is not None else ban.user_id,
        "reason": REASON,
        "terms_accepted": True,
        "ip_address": "203.0.113.10",
        "user_agent": "Mozilla/5.0",
    }
    params.update(kwargs)
    return await appeals.submit_appeal(db, **params)


async def _status(user_id: int) -> str:
    async with AsyncSessionLocal() as s:
        return (await s.get(User, user_id)).status


async def test_approve_appeal_unbans_user(db, make_user, admin):
    """使用者被封鎖 → 申訴 → 管理員核准 → 封鎖撤銷、status 回到 active"""
    user, ban = await _banned_user(db, make_user, admin)
    assert await _status(user.id) == "banned"

    appeal, raw = await _submit(db, ban)
    assert appeal.status == "pending"
    assert appeal.appeal_token == hash_token(raw)
    assert (await appeals.validate_appeal_token(db, raw)).id == appeal.id

    reviewed = await appeals.review_appeal(db, appeal.id, reviewer_id=admin.id, decision="approved")
    assert reviewed.status == "approved"
    assert reviewed.reviewed_by == admin.id
    assert reviewed.reviewed_at is not None

    await db.refresh(ban)
    assert ban.is_active is False
    assert ban.revoked_by == admin.id
    assert await _status(user.id) == "active"

    # 終態不可再審
    with pytest.raises(ConflictError):
        await appeals.review_appeal(
            db, appeal.id, reviewer_id=admin.id, decision="rejected", admin_response=RESPONSE
        )


async def test_reject_requires_response_and_keeps_ban(db, make_user, admin):
    user, ban = await _banned_user(db, make_user, admin)
    appeal, _ = await _submit(db, ban)

    with pytest.raises(ValidationError):
        await appeals.review_appeal(db, appeal.id, reviewer_id=admin.id, decision="rejected", admin_response="no")
    with pytest.raises(ValidationError):
        await appeals.review_appeal(db, appeal.id, reviewer_id=admin.id, decision="maybe", admin_response=RESPONSE)

    reviewed = await appeals.review_appeal(
        db, appeal.id, reviewer_id=admin.id, decision="rejected", admin_response=RESPONSE
    )
    assert reviewed.status == "rejected"
    assert reviewed.admin_response == RESPONSE
    assert await _status(user.id) == "banned"


async def test_only_admins_can_review(db, make_user, admin):
    _, ban = await _banned_user(db, make_user, admin)
    appeal, _ = await _submit(db, ban)
    editor = await make_user(role="editor")
    with pytest.raises(AuthorizationError):
        await appeals.review_appeal(db, appeal.id, reviewer_id=editor.id, decision="approved")
    with pytest.raises(ValidationError):
        await appeals.review_appeal(db, appeal.id, reviewer_id=None, decision="approved")
    with pytest.raises(NotFoundError):
        await appeals.review_appeal(db, 999_999, reviewer_id=admin.id, decision="approved")


async def test_second_appeal_for_same_ban_conflicts(db, make_user, admin):
    _, ban = await _banned_user(db, make_user, admin)
    now = utcnow()
    await _submit(db, ban, now=now)
    with pytest.raises(ConflictError):
        await _submit(db, ban, now=now + timedelta(minutes=10))


async def test_unique_constraint_backs_the_precheck(db, make_user, admin, monkeypatch):
    """兩個請求同時通過檢查時，由 DB unique constraint 擋下第二筆。"""
    _, ban = await _banned_user(db, make_user, admin)
    # rollback 後 ORM 物件會過期，先記下欄位值
    ban_id, user_id = ban.id, ban.user_id
    now = utcnow()
    await _submit(db, ban, now=now)

    async def _no_existing(*args, **kwargs):
        return None

    monkeypatch.setattr(appeals, "_existing_appeal", _no_existing)
    with pytest.raises(ConflictError):
        await _submit(db, ban, now=now + timedelta(minutes=10))

    async with AsyncSessionLocal() as s:
        s.add(BanAppeal(
            user_ban_id=ban_id,
            user_id=user_id,
            reason=REASON,
            status="pending",
            appeal_token=hash_token(generate_token()),
            terms_accepted=True,
        ))
        with pytest.raises(IntegrityError):
            await s.commit()


async def test_cannot_appeal_someone_elses_ban(db, make_user, admin):
    _, ban = await _banned_user(db, make_user, admin)
    stranger = await make_user()
    with pytest.raises(AuthorizationError):
        await _submit(db, ban, user_id=stranger.id)
    with pytest.raises(NotFoundError):
        await appeals.submit_appeal(
            db, ban_id=999_999, user_id=stranger.id, reason=REASON, terms_accepted=True
        )


async def test_irrevocable_and_inactive_bans_cannot_be_appealed(db, make_user, admin):
    _, irrevocable = await _banned_user(db, make_user, admin, is_irrevocable=True, admin_notes="confirmed fraud")
    with pytest.raises(ConflictError):
        await _submit(db, irrevocable)

    _, revoked = await _banned_user(db, make_user, admin)
    await ban_ledger.revoke_ban(db, revoked.id, admin.id)
    with pytest.raises(ConflictError):
        await _submit(db, revoked)


@pytest.mark.parametrize(
    "overrides",
    [
        {"terms_accepted": False},
        {"reason": "too short"},
        {"reason": "x" * 2001},
        {"reason": "<b></b>" * 20},
        {"reason": "Please unban me " + "!" * 30 + " I promise to follow the rules from now on."},
        {"reason": REASON + " http://a.example http://b.example http://c.example http://d.example"},
        {"reason": REASON + " Also click here to claim your prize."},
    ],
)
async def test_submit_validation(db, make_user, admin, overrides):
    _, ban = await _banned_user(db, make_user, admin)
    with pytest.raises(ValidationError):
        await _submit(db, ban, **overrides)


async def test_duplicate_window_and_rate_limit(db, make_user, admin, monkeypatch):
    user = await make_user()
    now = utcnow()
    first = await ban_ledger.create_ban(db, actor_id=admin.id, user_id=user.id, reason="one", now=now)
    second = await ban_ledger.create_ban(db, actor_id=admin.id, user_id=user.id, reason="two", now=now)
    await _submit(db, first, now=now)

    # 5 分鐘內再送 → 429
    with pytest.raises(RateLimitedError) as exc:
        await _submit(db, second, now=now + timedelta(minutes=2))
    assert exc.value.retry_after

    # 限流器拒絕
    async def _deny(*args, **kwargs):
        return False, 1200

    monkeypatch.setattr(appeals, "check_appeal_limit_and_hit", _deny)
    with pytest.raises(RateLimitedError) as exc:
        await _submit(db, second, now=now + timedelta(minutes=10))
    assert exc.value.retry_after == 1200


async def test_submit_consumes_appeal_link_and_cleans_metadata(db, make_user, admin):
    _, ban = await _banned_user(db, make_user, admin)
    link = await ban_ledger.issue_appeal_url_token(db, ban.id)

    appeal, _ = await _submit(
        db, ban, ip_address="not-an-ip", user_agent="A" * 800, reason="<p>" + REASON + "</p>"
    )
    assert appeal.ip_address == "0.0.0.0"
    assert len(appeal.user_agent) == 500
    assert appeal.reason == REASON

    async with AsyncSessionLocal() as s:
        assert (await s.get(UserBan, ban.id)).appeal_url_token is None
    with pytest.raises(NotFoundError):
        await ban_ledger.validate_appeal_url_token(db, link)


async def test_rotate_appeal_token(db, make_user, admin):
    _, ban = await _banned_user(db, make_user, admin)
    appeal, old = await _submit(db, ban)

    new = await appeals.rotate_appeal_token(db, appeal.id)
    assert new != old
    with pytest.raises(NotFoundError):
        await appeals.validate_appeal_token(db, old)
    assert (await appeals.validate_appeal_token(db, new)).id == appeal.id


async def test_more_info_round_trip(db, make_user, admin):
    user, ban = await _banned_user(db, make_user, admin)
    appeal, raw = await _submit(db, ban)

    # pending 時不能補件
    with pytest.raises(ConflictError):
        await appeals.submit_additional_info(db, raw, "Here are more details about it.")

    asked = await appeals.review_appeal(
        db, appeal.id, reviewer_id=admin.id, decision="more_info_requested",
        admin_response="Please tell us which device you were using.",
    )
    assert asked.status == "more_info_requested"
    assert asked.can_be_reviewed

    with pytest.raises(ValidationError):
        await appeals.submit_additional_info(db, raw, "short")
    followed = await appeals.submit_additional_info(db, raw, "It was my old Android phone, now reset.")
    assert followed.status == "pending"
    assert followed.additional_info.startswith("It was my old Android phone")

    approved = await appeals.review_appeal(db, appeal.id, reviewer_id=admin.id, decision="approved")
    assert approved.status == "approved"
    assert await _status(user.id) == "active"


async def test_list_and_statistics(db, make_user, admin):
    before = await appeals.get_appeal_statistics(db)

    _, ban_a = await _banned_user(db, make_user, admin)
    _, ban_b = await _banned_user(db, make_user, admin)
    appeal_a, _ = await _submit(db, ban_a)
    appeal_b, _ = await _submit(db, ban_b)
    await appeals.review_appeal(db, appeal_a.id, reviewer_id=admin.id, decision="approved")
    await appeals.review_appeal(
        db, appeal_b.id, reviewer_id=admin.id, decision="rejected", admin_response=RESPONSE
    )

    after = await appeals.get_appeal_statistics(db)
    assert after.total == before.total + 2
    assert after.approved == before.approved + 1
    assert after.rejected == before.rejected + 1
    assert 0.0 < after.approval_rate < 100.0

    items, total = await appeals.list_appeals(db, status="approved", user_id=appeal_a.user_id)
    assert total == 1 and items[0].id == appeal_a.id

    with pytest.raises(ValidationError):
        await appeals.list_appeals(db, status="archived")


def test_spam_patterns():
    assert appeals.contains_spam_patterns("a" * 21)
    assert not appeals.contains_spam_patterns("a" * 20)
    assert appeals.contains_spam_patterns("BUY NOW while it lasts")
    assert not appeals.contains_spam_patterns("see https://one.example and https://two.example")
