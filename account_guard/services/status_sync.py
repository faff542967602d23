# account_guard/services/status_sync.py
"""
users.status 與 user_bans 的對帳：

  1️⃣ 有「有效封鎖」（is_active 且未過期）的使用者 → status = banned
  2️⃣ status = banned 但找不到有效封鎖的使用者 → status = active

封鎖紀錄才是事實來源；這裡只修正偏差，不會新增封鎖。
只更新真的不一致的列，所以連續執行第二次不會再有任何寫入。
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from account_guard.core.security import utcnow
from account_guard.models.bans import UserBan
from account_guard.models.users import USER_STATUS_ACTIVE, USER_STATUS_BANNED, User

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    banned: int = 0
    restored: int = 0

    @property
    def changed(self) -> int:
        return self.banned + self.restored


def banned_user_ids_subquery(now: datetime):
    """目前被有效封鎖的 user_id（IP-only 封鎖不算）。"""
    return (
        select(UserBan.user_id)
        .where(
            UserBan.user_id.is_not(None),
            UserBan.is_active.is_(True),
            or_(UserBan.expires_at.is_(None), UserBan.expires_at > now),
        )
    )


async def synchronize_user_statuses(
    db: AsyncSession,
    user_ids: Optional[Iterable[int]] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> SyncReport:
    """
    執行一次對帳。user_ids 為 None 時掃全部使用者；
    封鎖異動時只對受影響的使用者跑，並以 commit=False 併入同一個交易。
    """
    now = now or utcnow()
    scope: Optional[List[int]] = list(user_ids) if user_ids is not None else None
    report = SyncReport()
    if scope is not None and not scope:
        return report

    banned_ids = banned_user_ids_subquery(now)

    # 1️⃣ 應為 banned 卻不是
    q_to_ban = select(User.id).where(
        User.deleted_at.is_(None),
        User.status != USER_STATUS_BANNED,
        User.id.in_(banned_ids),
    )
    # 2️⃣ 標為 banned 卻已無有效封鎖
    q_to_restore = select(User.id).where(
        User.deleted_at.is_(None),
        User.status == USER_STATUS_BANNED,
        User.id.not_in(banned_ids),
    )
    if scope is not None:
        q_to_ban = q_to_ban.where(User.id.in_(scope))
        q_to_restore = q_to_restore.where(User.id.in_(scope))

    to_ban = list((await db.execute(q_to_ban)).scalars().all())
    to_restore = list((await db.execute(q_to_restore)).scalars().all())

    if to_ban:
        await db.execute(
            update(User)
            .where(User.id.in_(to_ban))
            .values(status=USER_STATUS_BANNED)
            .execution_options(synchronize_session="fetch")
        )
    if to_restore:
        await db.execute(
            update(User)
            .where(User.id.in_(to_restore))
            .values(status=USER_STATUS_ACTIVE)
            .execution_options(synchronize_session="fetch")
        )

    report.banned = len(to_ban)
    report.restored = len(to_restore)

    if commit:
        await db.commit()

    if report.changed:
        logger.info(
            "Status sync corrected drift: banned=%s restored=%s", report.banned, report.restored
        )
    return report
