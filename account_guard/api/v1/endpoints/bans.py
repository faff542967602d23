# account_guard/api/v1/endpoints/bans.py
from datetime import timedelta
from typing import List

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from account_guard.core.config import settings
from account_guard.core.deps import client_ip, require_admin_user
from account_guard.core.security import utcnow
from account_guard.db.session import get_db
from account_guard.models.users import User
from account_guard.schemas.bans import (
    AppealLink,
    BanAdminRead,
    BanCreate,
    BanStatus,
    BanUpdate,
    SyncResult,
)
from account_guard.services import ban_ledger
from account_guard.services.status_sync import synchronize_user_statuses

router = APIRouter()


@router.get("/status", response_model=BanStatus, summary="Is the caller's IP banned")
async def ban_status(request: Request, db: AsyncSession = Depends(get_db)):
    return BanStatus(ip_banned=await ban_ledger.is_ip_banned(db, client_ip(request)))


@router.post("", response_model=BanAdminRead, status_code=status.HTTP_201_CREATED)
async def create_ban(
    payload: BanCreate,
    admin: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    now = utcnow()
    expires_at = ban_ledger.calculate_ban_expiration(payload.duration, payload.expires_at, now)
    return await ban_ledger.create_ban(
        db,
        actor_id=admin.id,
        reason=payload.reason,
        user_id=payload.user_id,
        ip_address=payload.ip_address,
        expires_at=expires_at,
        is_irrevocable=payload.is_irrevocable,
        admin_notes=payload.admin_notes,
        ip_ban=payload.ip_ban,
        now=now,
    )


@router.get("/users/{user_id}", response_model=List[BanAdminRead], summary="Ban history of a user")
async def ban_history(
    user_id: int,
    admin: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    await ban_ledger.get_live_user(db, user_id)
    return await ban_ledger.get_ban_history(db, user_id)


@router.patch("/{ban_id}", response_model=BanAdminRead)
async def modify_ban(
    ban_id: int,
    payload: BanUpdate,
    admin: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    now = utcnow()
    expires_at = ban_ledger.calculate_ban_expiration(payload.duration, payload.expires_at, now)
    return await ban_ledger.modify_ban(
        db,
        ban_id,
        actor_id=admin.id,
        reason=payload.reason,
        expires_at=expires_at,
        admin_notes=payload.admin_notes,
        now=now,
    )


@router.post("/{ban_id}/revoke", response_model=BanAdminRead)
async def revoke_ban(
    ban_id: int,
    admin: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    return await ban_ledger.revoke_ban(db, ban_id, admin.id)


@router.post("/{ban_id}/appeal-link", response_model=AppealLink)
async def issue_appeal_link(
    ban_id: int,
    admin: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    """產生（輪替）申訴連結 token；舊連結立即失效。"""
    now = utcnow()
    raw = await ban_ledger.issue_appeal_url_token(db, ban_id, now)
    return AppealLink(
        ban_id=ban_id,
        appeal_url_token=raw,
        expires_at=now + timedelta(hours=settings.APPEAL_URL_TOKEN_TTL_HOURS),
    )


@router.post("/sync", response_model=SyncResult, summary="Reconcile users.status with bans")
async def run_sync(
    admin: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    report = await synchronize_user_statuses(db)
    return SyncResult(banned=report.banned, restored=report.restored)
