# account_guard/services/maintenance.py
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from account_guard.core.security import utcnow
from account_guard.services.ban_ledger import deactivate_expired_bans
from account_guard.services.devices import purge_expired_trusted_devices
from account_guard.services.impersonation import expire_stale_impersonations
from account_guard.services.status_sync import synchronize_user_statuses


@dataclass
class SweepResult:
    expired_bans: int = 0
    banned: int = 0
    restored: int = 0
    purged_trusted_devices: int = 0
    expired_impersonations: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


async def run_sweep(db: AsyncSession, now: Optional[datetime] = None) -> SweepResult:
    """
    定期清理（單一交易）：
      1️⃣ 關閉已過期的封鎖
      2️⃣ 全域 status 對帳
      3️⃣ 刪除過期的信任裝置
      4️⃣ 結束逾時的模擬身分 session
    過期判斷本來就是 lazy 的，這裡只是讓資料表保持乾淨。
    """
    now = now or utcnow()
    result = SweepResult()
    try:
        result.expired_bans = await deactivate_expired_bans(db, now, commit=False)
        report = await synchronize_user_statuses(db, now=now, commit=False)
        result.banned, result.restored = report.banned, report.restored
        result.purged_trusted_devices = await purge_expired_trusted_devices(db, now, commit=False)
        result.expired_impersonations = await expire_stale_impersonations(db, now, commit=False)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return result
