# account_guard/services/ban_ledger.py
"""
封鎖帳本：建立 / 修改 / 撤銷封鎖、查詢是否封鎖中、申訴連結 token。

每個會異動封鎖的操作都在同一個交易內跑 status_sync（只針對該使用者），
避免 users.status 出現短暫過期的狀態。
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from account_guard.core.config import settings
from account_guard.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from account_guard.core.security import generate_token, hash_token, utcnow
from account_guard.models.bans import UserBan
from account_guard.models.users import User
from account_guard.services import audit, devices
from account_guard.services.status_sync import synchronize_user_statuses

logger = logging.getLogger(__name__)

DURATION_PRESETS = {
    "1_hour": timedelta(hours=1),
    "1_day": timedelta(days=1),
    "1_week": timedelta(weeks=1),
    "1_month": timedelta(days=30),
    "3_months": timedelta(days=90),
    "6_months": timedelta(days=180),
    "1_year": timedelta(days=365),
}

# 對外一律同一個訊息：不區分「不存在」與「已過期」
INVALID_APPEAL_LINK = "Invalid or expired appeal link"


def calculate_ban_expiration(
    duration: Optional[str],
    custom_expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    把時長字串（1_day / 1_week / permanent / custom ...）換成到期時間；
    permanent 或空值回傳 None。
    """
    if not duration or duration == "permanent":
        return None
    if duration == "custom":
        if custom_expires_at is None:
            raise ValidationError("custom duration requires expires_at")
        if custom_expires_at.tzinfo is not None:
            # DB 一律存 naive UTC
            custom_expires_at = custom_expires_at.astimezone(timezone.utc).replace(tzinfo=None)
        return custom_expires_at
    delta = DURATION_PRESETS.get(duration)
    if delta is None:
        raise ValidationError(f"Unknown ban duration: {duration}")
    return (now or utcnow()) + delta


def _in_force(now: datetime):
    return (
        UserBan.is_active.is_(True),
        or_(UserBan.expires_at.is_(None), UserBan.expires_at > now),
    )


async def get_live_user(db: AsyncSession, user_id: int) -> User:
    """取得未軟刪除的使用者，找不到即 NotFoundError。"""
    res = await db.execute(select(User).where(User.id == user_id, User.deleted_at.is_(None)))
    user = res.scalar_one_or_none()
    if user is None:
        raise NotFoundError("User not found")
    return user


async def require_admin(db: AsyncSession, actor_id: Optional[int]) -> User:
    """管理員操作一定要有 actor，不提供預設值。"""
    if actor_id is None:
        raise ValidationError("actor_id is required for admin actions")
    res = await db.execute(select(User).where(User.id == actor_id, User.deleted_at.is_(None)))
    actor = res.scalar_one_or_none()
    if actor is None or not actor.is_admin:
        raise AuthorizationError("Administrator privileges required")
    return actor


async def get_ban(db: AsyncSession, ban_id: int) -> UserBan:
    ban = await db.get(UserBan, ban_id)
    if ban is None:
        raise NotFoundError("Ban not found")
    return ban


async def create_ban(
    db: AsyncSession,
    *,
    actor_id: Optional[int],
    reason: str,
    user_id: Optional[int] = None,
    ip_address: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    is_irrevocable: bool = False,
    admin_notes: Optional[str] = None,
    ip_ban: bool = False,
    now: Optional[datetime] = None,
) -> UserBan:
    now = now or utcnow()
    reason = (reason or "").strip()

    # --- 輸入檢查 ---
    if is_irrevocable and expires_at is not None:
        raise ValidationError("Irrevocable bans must be permanent")
    if is_irrevocable and not (admin_notes or "").strip():
        raise ValidationError("Irrevocable bans require admin notes")
    if not reason:
        raise ValidationError("Ban reason is required")
    if user_id is None and not ip_address:
        raise ValidationError("A ban needs a user or an IP address")
    if expires_at is not None and expires_at <= now:
        raise ValidationError("expires_at must be in the future")

    actor = await require_admin(db, actor_id)

    try:
        user: Optional[User] = None
        if user_id is not None:
            user = await get_live_user(db, user_id)
            if ip_ban and not ip_address:
                ip_address = user.last_login_ip
        elif not ip_ban:
            # IP-only 封鎖
            ip_ban = True

        ban = UserBan(
            user_id=user.id if user else None,
            banned_by=actor.id,
            reason=reason,
            admin_notes=admin_notes,
            banned_at=now,
            expires_at=expires_at,
            is_active=True,
            is_irrevocable=is_irrevocable,
            ip_ban=bool(ip_ban and ip_address),
            ip_address=ip_address if ip_ban else None,
            created_at=now,
        )
        db.add(ban)
        await db.flush()

        if user is not None:
            # 撤銷信任裝置（含 user_devices.is_trusted），避免被封鎖者用 remember token 繞過
            await devices.revoke_trusted_devices(db, user.id, commit=False)
            # token_version +1 → 既有 access token 全數失效
            user.token_version = int(user.token_version or 0) + 1
            await synchronize_user_statuses(db, user_ids=[user.id], now=now, commit=False)

        await audit.log_action(
            db,
            actor.id,
            "ban.create",
            target_type="user" if user else "ban",
            target_id=user.id if user else ban.id,
            severity="high",
            details={
                "ban_id": ban.id,
                "reason": reason,
                "expires_at": expires_at.isoformat() if expires_at else None,
                "is_irrevocable": is_irrevocable,
                "ip_ban": ban.ip_ban,
                "ip_address": ban.ip_address,
            },
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "User banned: ban_id=%s user_id=%s expires_at=%s", ban.id, ban.user_id, ban.expires_at
    )
    return ban


async def modify_ban(
    db: AsyncSession,
    ban_id: int,
    *,
    actor_id: Optional[int],
    reason: str,
    expires_at: Optional[datetime],
    admin_notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> UserBan:
    """調整原因 / 到期時間；不可撤銷的封鎖不允許修改。"""
    now = now or utcnow()
    actor = await require_admin(db, actor_id)
    ban = await get_ban(db, ban_id)

    if ban.is_irrevocable:
        raise ConflictError("Irrevocable bans cannot be modified")
    if not ban.is_active:
        raise ConflictError("Only active bans can be modified")
    if not (reason or "").strip():
        raise ValidationError("Ban reason is required")
    if expires_at is not None and expires_at <= now:
        raise ValidationError("expires_at must be in the future")

    try:
        old_expires = ban.expires_at
        ban.reason = reason.strip()
        ban.expires_at = expires_at
        ban.admin_notes = admin_notes
        if ban.user_id is not None:
            await synchronize_user_statuses(db, user_ids=[ban.user_id], now=now, commit=False)
        await audit.log_action(
            db,
            actor.id,
            "ban.modify",
            target_type="ban",
            target_id=ban.id,
            details={
                "old_expires_at": old_expires.isoformat() if old_expires else None,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return ban


async def deactivate_ban(
    db: AsyncSession,
    ban: UserBan,
    actor: User,
    now: datetime,
    action: str = "ban.revoke",
) -> UserBan:
    """
    撤銷的實際寫入（不 commit）；申訴核准時與申訴狀態在同一交易內執行。
    已失效的封鎖直接回傳，不重複寫入。
    """
    if ban.is_irrevocable:
        raise ConflictError("Irrevocable bans cannot be revoked")
    if not ban.is_active:
        return ban

    ban.is_active = False
    ban.revoked_at = now
    ban.revoked_by = actor.id
    # 封鎖解除後舊的申訴連結也不再有效
    ban.appeal_url_token = None
    ban.appeal_url_token_expires_at = None

    if ban.user_id is not None:
        await synchronize_user_statuses(db, user_ids=[ban.user_id], now=now, commit=False)

    await audit.log_action(
        db,
        actor.id,
        action,
        target_type="ban",
        target_id=ban.id,
        details={"user_id": ban.user_id, "had_ip_ban": ban.ip_ban},
    )
    return ban


async def revoke_ban(
    db: AsyncSession,
    ban_id: int,
    actor_id: Optional[int],
    now: Optional[datetime] = None,
) -> UserBan:
    now = now or utcnow()
    actor = await require_admin(db, actor_id)
    ban = await get_ban(db, ban_id)
    try:
        await deactivate_ban(db, ban, actor, now)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info("Ban revoked: ban_id=%s by=%s", ban.id, actor.id)
    return ban


async def get_current_ban(
    db: AsyncSession, user_id: int, now: Optional[datetime] = None
) -> Optional[UserBan]:
    """最新一筆仍有效的封鎖；沒有則 None。"""
    now = now or utcnow()
    res = await db.execute(
        select(UserBan)
        .where(UserBan.user_id == user_id, *_in_force(now))
        .order_by(UserBan.banned_at.desc(), UserBan.id.desc())
        .limit(1)
    )
    return res.scalar_one_or_none()


async def is_user_currently_banned(
    db: AsyncSession, user_id: int, now: Optional[datetime] = None
) -> bool:
    return await get_current_ban(db, user_id, now) is not None


async def is_ip_banned(db: AsyncSession, ip: Optional[str], now: Optional[datetime] = None) -> bool:
    if not ip:
        return False
    now = now or utcnow()
    res = await db.execute(
        select(UserBan.id)
        .where(UserBan.ip_ban.is_(True), UserBan.ip_address == ip, *_in_force(now))
        .limit(1)
    )
    return res.scalar_one_or_none() is not None


async def get_ban_history(db: AsyncSession, user_id: int) -> List[UserBan]:
    res = await db.execute(
        select(UserBan)
        .where(UserBan.user_id == user_id)
        .order_by(UserBan.created_at.desc(), UserBan.id.desc())
    )
    return list(res.scalars().all())


async def issue_appeal_url_token(
    db: AsyncSession, ban_id: int, now: Optional[datetime] = None
) -> str:
    """
    產生新的申訴連結 token，只存 sha256。
    新 hash 直接覆寫舊 hash（同一列的單次 UPDATE），任一時間最多一個有效連結。
    """
    now = now or utcnow()
    ban = await get_ban(db, ban_id)
    if ban.is_irrevocable:
        raise ConflictError("Irrevocable bans cannot be appealed")
    if not ban.is_in_force(now):
        raise ConflictError("Ban is not active")

    raw = generate_token()
    try:
        await db.execute(
            update(UserBan)
            .where(UserBan.id == ban.id)
            .values(
                appeal_url_token=hash_token(raw),
                appeal_url_token_rotated_at=now,
                appeal_url_token_expires_at=now + timedelta(hours=settings.APPEAL_URL_TOKEN_TTL_HOURS),
            )
            .execution_options(synchronize_session="fetch")
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info("Appeal URL token issued: ban_id=%s", ban.id)
    return raw


async def validate_appeal_url_token(
    db: AsyncSession, raw_token: str, now: Optional[datetime] = None
) -> UserBan:
    """以 hash 查封鎖；所有失敗原因對外都是同一個 NotFoundError，原因只寫 log。"""
    now = now or utcnow()
    if not raw_token:
        raise NotFoundError(INVALID_APPEAL_LINK)
    res = await db.execute(select(UserBan).where(UserBan.appeal_url_token == hash_token(raw_token)))
    ban = res.scalar_one_or_none()

    reason = None
    if ban is None:
        reason = "unknown_token"
    elif ban.appeal_url_token_expires_at is not None and ban.appeal_url_token_expires_at <= now:
        reason = "token_expired"
    elif not ban.is_in_force(now):
        reason = "ban_not_in_force"
    if reason:
        logger.warning("Appeal URL token rejected: reason=%s ban_id=%s", reason, ban.id if ban else None)
        raise NotFoundError(INVALID_APPEAL_LINK)
    return ban


async def deactivate_expired_bans(
    db: AsyncSession, now: Optional[datetime] = None, commit: bool = True
) -> int:
    """排程清理用：把已過期但仍 is_active 的封鎖關掉。正確性不依賴它。"""
    now = now or utcnow()
    res = await db.execute(
        update(UserBan)
        .where(
            UserBan.is_active.is_(True),
            UserBan.expires_at.is_not(None),
            UserBan.expires_at <= now,
        )
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    if commit:
        await db.commit()
    return res.rowcount or 0
