# account_guard/services/impersonation.py
"""
管理員「以使用者身分登入」。

session token = HMAC(SECRET_KEY, actor|target|時間|亂數)，DB 只存它的 sha256。
帶 imp 的 access token 在 session 結束或逾時後立即失效（見 core/deps.py）。
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from account_guard.core.config import settings
from account_guard.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from account_guard.core.security import hash_token, hmac_token, utcnow
from account_guard.models.security_logs import ImpersonationSession
from account_guard.services import audit
from account_guard.services.ban_ledger import get_live_user, is_user_currently_banned, require_admin

logger = logging.getLogger(__name__)

END_MANUAL = "manual"
END_LOGOUT = "logout"
END_EXPIRED = "expired"
END_ADMIN_TERMINATED = "admin_terminated"
END_REASONS = (END_MANUAL, END_LOGOUT, END_EXPIRED, END_ADMIN_TERMINATED)


def _live(now: datetime):
    return (ImpersonationSession.ended_at.is_(None), ImpersonationSession.expires_at > now)


async def _count_live(db: AsyncSession, now: datetime, impersonator_id: Optional[int] = None) -> int:
    q = select(func.count(ImpersonationSession.id)).where(*_live(now))
    if impersonator_id is not None:
        q = q.where(ImpersonationSession.impersonator_id == impersonator_id)
    return int(await db.scalar(q) or 0)


async def begin_impersonation(
    db: AsyncSession,
    *,
    actor_id: Optional[int],
    target_id: int,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[ImpersonationSession, str]:
    now = now or utcnow()
    actor = await require_admin(db, actor_id)
    if actor.id == target_id:
        raise ValidationError("You cannot impersonate yourself")
    target = await get_live_user(db, target_id)

    # 1️⃣ 身分檢查
    if target.role in settings.IMPERSONATION_BLOCKED_ROLES:
        raise AuthorizationError("This user cannot be impersonated")
    if settings.IMPERSONATION_REQUIRE_2FA and not actor.two_factor_enabled:
        raise AuthorizationError("Two-factor authentication is required to impersonate users")
    if await is_user_currently_banned(db, target.id, now):
        raise ConflictError("Banned users cannot be impersonated")

    # 2️⃣ 同時進行中的數量
    if await _count_live(db, now) >= settings.IMPERSONATION_MAX_CONCURRENT:
        raise ConflictError("Too many active impersonation sessions")
    if await _count_live(db, now, actor.id) >= settings.IMPERSONATION_MAX_PER_USER:
        raise ConflictError("You have too many active impersonation sessions")

    raw = hmac_token(actor.id, target.id, now.isoformat())
    session = ImpersonationSession(
        impersonator_id=actor.id,
        target_id=target.id,
        session_token_hash=hash_token(raw),
        started_at=now,
        expires_at=now + timedelta(minutes=settings.IMPERSONATION_TIMEOUT_MINUTES),
        ip_address=ip_address,
        user_agent=(user_agent or "")[:500] or None,
    )
    try:
        db.add(session)
        await db.flush()
        await audit.log_action(
            db,
            actor.id,
            "impersonation.start",
            target_type="user",
            target_id=target.id,
            severity="high",
            details={"session_id": session.id, "expires_at": session.expires_at.isoformat()},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Impersonation started: session_id=%s actor=%s target=%s", session.id, actor.id, target.id)
    return session, raw


async def get_session(db: AsyncSession, session_id: int) -> ImpersonationSession:
    session = await db.get(ImpersonationSession, session_id)
    if session is None:
        raise NotFoundError("Impersonation session not found")
    return session


async def end_impersonation(
    db: AsyncSession,
    session_id: int,
    reason: str = END_MANUAL,
    actor_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> ImpersonationSession:
    """結束 session；已結束的直接回傳。"""
    now = now or utcnow()
    if reason not in END_REASONS:
        raise ValidationError(f"Unknown end reason: {reason}")
    session = await get_session(db, session_id)
    if session.ended_at is not None:
        return session

    try:
        session.ended_at = now
        session.end_reason = reason
        await audit.log_action(
            db,
            actor_id if actor_id is not None else session.impersonator_id,
            "impersonation.end",
            target_type="impersonation",
            target_id=session.id,
            details={"reason": reason, "target_id": session.target_id},
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info("Impersonation ended: session_id=%s reason=%s", session.id, reason)
    return session


async def end_by_token(
    db: AsyncSession, raw_token: str, reason: str = END_MANUAL, now: Optional[datetime] = None
) -> ImpersonationSession:
    res = await db.execute(
        select(ImpersonationSession).where(ImpersonationSession.session_token_hash == hash_token(raw_token or ""))
    )
    session = res.scalar_one_or_none()
    if session is None:
        raise NotFoundError("Impersonation session not found")
    return await end_impersonation(db, session.id, reason, now=now)


async def active_impersonations(
    db: AsyncSession, impersonator_id: Optional[int] = None, now: Optional[datetime] = None
) -> List[ImpersonationSession]:
    now = now or utcnow()
    q = select(ImpersonationSession).where(*_live(now))
    if impersonator_id is not None:
        q = q.where(ImpersonationSession.impersonator_id == impersonator_id)
    res = await db.execute(q.order_by(ImpersonationSession.started_at.desc()))
    return list(res.scalars().all())


async def expire_stale_impersonations(
    db: AsyncSession, now: Optional[datetime] = None, commit: bool = True
) -> int:
    """排程用：逾時但尚未結束的 session 標記為 expired。"""
    now = now or utcnow()
    res = await db.execute(
        update(ImpersonationSession)
        .where(ImpersonationSession.ended_at.is_(None), ImpersonationSession.expires_at <= now)
        .values(ended_at=now, end_reason=END_EXPIRED)
        .execution_options(synchronize_session=False)
    )
    if commit:
        await db.commit()
    return res.rowcount or 0
