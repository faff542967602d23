# account_guard/services/audit.py
"""管理員稽核紀錄：寫入、查詢，以及依標籤取回對象。"""
import logging
from typing import Any, Dict, List, Optional, Tuple, Type

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from account_guard.core.errors import NotFoundError, ValidationError
from account_guard.core.security import utcnow
from account_guard.models.appeals import BanAppeal
from account_guard.models.bans import UserBan
from account_guard.models.base import Base
from account_guard.models.devices import TrustedDevice, UserDevice
from account_guard.models.security_logs import AdminAuditLog, ImpersonationSession
from account_guard.models.users import User

logger = logging.getLogger(__name__)

# 稽核對象的型別標籤 → 模型；只接受登錄過的標籤，不用類別名稱反射
TARGET_MODELS: Dict[str, Type[Base]] = {
    "user": User,
    "ban": UserBan,
    "appeal": BanAppeal,
    "device": UserDevice,
    "trusted_device": TrustedDevice,
    "impersonation": ImpersonationSession,
}


async def log_action(
    db: AsyncSession,
    actor_id: Optional[int],
    action: str,
    target_type: Optional[str] = None,
    target_id: Any = None,
    details: Optional[Dict[str, Any]] = None,
    severity: str = "medium",
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> AdminAuditLog:
    """
    加入一筆稽核紀錄（不 commit，跟隨呼叫端的交易一起提交）。

    Args:
        actor_id: 執行動作的管理員；系統排程可傳 None，管理員操作必填（由呼叫端保證）
        action: ban.create / ban.revoke / appeal.review ...
        target_type: 必須是 TARGET_MODELS 內的標籤
    """
    if target_type is not None and target_type not in TARGET_MODELS:
        raise ValidationError(f"Unknown audit target type: {target_type}")

    entry = AdminAuditLog(
        actor_id=actor_id,
        action=action,
        severity=severity,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        details=details,
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=utcnow(),
    )
    db.add(entry)
    logger.info(
        "Audit: actor=%s action=%s target=%s:%s", actor_id, action, target_type, target_id
    )
    return entry


async def resolve_target(db: AsyncSession, entry: AdminAuditLog) -> Optional[Base]:
    """依 (target_type, target_id) 取回實際物件；標籤未知或資料已刪除回傳 None。"""
    model = TARGET_MODELS.get(entry.target_type or "")
    if model is None or entry.target_id is None:
        return None
    try:
        pk = int(entry.target_id)
    except ValueError:
        return None
    return await db.get(model, pk)


async def list_audit_logs(
    db: AsyncSession,
    action: Optional[str] = None,
    target_type: Optional[str] = None,
    target_id: Any = None,
    actor_id: Optional[int] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[AdminAuditLog], int]:
    if target_type is not None and target_type not in TARGET_MODELS:
        raise ValidationError(f"Unknown audit target type: {target_type}")

    q = select(AdminAuditLog)
    if action:
        q = q.where(AdminAuditLog.action == action)
    if target_type:
        q = q.where(AdminAuditLog.target_type == target_type)
    if target_id is not None:
        q = q.where(AdminAuditLog.target_id == str(target_id))
    if actor_id is not None:
        q = q.where(AdminAuditLog.actor_id == actor_id)

    total = await db.scalar(select(func.count()).select_from(q.subquery())) or 0
    page = max(1, page)
    q = q.order_by(AdminAuditLog.created_at.desc(), AdminAuditLog.id.desc()).offset((page - 1) * page_size).limit(page_size)
    res = await db.execute(q)
    return list(res.scalars().all()), int(total)


async def get_audit_log(db: AsyncSession, entry_id: int) -> AdminAuditLog:
    entry = await db.get(AdminAuditLog, entry_id)
    if entry is None:
        raise NotFoundError("Audit log entry not found")
    return entry
