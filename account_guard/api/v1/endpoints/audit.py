# account_guard/api/v1/endpoints/audit.py
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from account_guard.core.deps import require_admin_user
from account_guard.db.session import get_db
from account_guard.models.users import User
from account_guard.schemas.audit import AuditLogDetail, AuditLogPage, AuditLogRead
from account_guard.services import audit

router = APIRouter()


@router.get("", response_model=AuditLogPage)
async def list_audit_logs(
    action: Optional[str] = None,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    actor_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    admin: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    items, total = await audit.list_audit_logs(db, action, target_type, target_id, actor_id, page, page_size)
    return AuditLogPage(
        items=[AuditLogRead.model_validate(e) for e in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{entry_id}", response_model=AuditLogDetail)
async def get_audit_log(
    entry_id: int,
    admin: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """單筆稽核紀錄；target_found 表示對象是否還查得到。"""
    entry = await audit.get_audit_log(db, entry_id)
    target = await audit.resolve_target(db, entry)
    return AuditLogDetail(**AuditLogRead.model_validate(entry).model_dump(), target_found=target is not None)
