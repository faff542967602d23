# account_guard/services/recovery_codes.py
"""2FA recovery code：產生、使用（一次性），以及短時間內大量使用的異常告警。"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from account_guard.core.config import settings
from account_guard.core.errors import ConflictError
from account_guard.core.security import generate_recovery_codes, hash_token, new_totp_secret, utcnow
from account_guard.models.security_logs import RecoveryCodeUsage
from account_guard.models.users import User
from account_guard.services import audit

logger = logging.getLogger(__name__)


async def enable_two_factor(db: AsyncSession, user: User) -> List[str]:
    """設定 TOTP secret 並產生新的一組 recovery codes；明文 codes 只回傳這一次。"""
    codes = generate_recovery_codes()
    user.two_factor_secret = user.two_factor_secret or new_totp_secret()
    user.two_factor_recovery_codes = [hash_token(c) for c in codes]
    await db.commit()
    return codes


async def regenerate_recovery_codes(db: AsyncSession, user: User) -> List[str]:
    """換一組新的 recovery codes，舊的全部作廢；未啟用 2FA 時拒絕。"""
    if not user.two_factor_secret:
        raise ConflictError("Two-factor authentication is not enabled")
    codes = generate_recovery_codes()
    user.two_factor_recovery_codes = [hash_token(c) for c in codes]
    await db.commit()
    logger.info("Recovery codes regenerated: user_id=%s", user.id)
    return codes


async def recent_usage_count(
    db: AsyncSession, user_id: int, now: Optional[datetime] = None
) -> int:
    now = now or utcnow()
    since = now - timedelta(hours=settings.RECOVERY_CODE_ANOMALY_WINDOW_HOURS)
    n = await db.scalar(
        select(func.count(RecoveryCodeUsage.id)).where(
            RecoveryCodeUsage.user_id == user_id, RecoveryCodeUsage.used_at >= since
        )
    )
    return int(n or 0)


async def consume_recovery_code(
    db: AsyncSession,
    user: User,
    code: str,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    驗證並消耗一組 recovery code。
    成功：移除該 hash、寫入使用紀錄；視窗內使用次數達門檻時記 warning + 稽核。
    """
    now = now or utcnow()
    normalized = (code or "").strip().lower()
    hashed = hash_token(normalized)
    stored = list(user.two_factor_recovery_codes or [])
    if not normalized or hashed not in stored:
        return False

    try:
        stored.remove(hashed)
        # JSON 欄位需整個重新指派才會被 ORM 偵測到變更
        user.two_factor_recovery_codes = stored
        db.add(RecoveryCodeUsage(
            user_id=user.id,
            code_hash=hashed,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:500] or None,
            used_at=now,
        ))
        await db.flush()

        used = await recent_usage_count(db, user.id, now)
        if used >= settings.RECOVERY_CODE_ANOMALY_THRESHOLD:
            logger.warning(
                "Recovery code anomaly: user_id=%s used=%s within %sh ip=%s",
                user.id, used, settings.RECOVERY_CODE_ANOMALY_WINDOW_HOURS, ip_address,
            )
            await audit.log_action(
                db,
                None,
                "security.recovery_code_anomaly",
                target_type="user",
                target_id=user.id,
                severity="high",
                details={"used_in_window": used, "remaining": len(stored)},
                ip_address=ip_address,
                user_agent=user_agent,
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Recovery code used: user_id=%s remaining=%s", user.id, len(stored))
    return True
