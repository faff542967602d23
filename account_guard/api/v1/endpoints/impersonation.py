# account_guard/api/v1/endpoints/impersonation.py
from typing import List

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from account_guard.core.deps import (
    AuthContext,
    client_ip,
    client_user_agent,
    get_auth_context,
    require_admin_user,
)
from account_guard.core.config import settings
from account_guard.core.security import create_access_token
from account_guard.db.session import get_db
from account_guard.models.users import User
from account_guard.schemas.impersonation import (
    ImpersonationRead,
    ImpersonationStart,
    ImpersonationStarted,
    ImpersonationStop,
)
from account_guard.services import impersonation

router = APIRouter()


@router.post("", response_model=ImpersonationStarted, status_code=status.HTTP_201_CREATED)
async def start_impersonation(
    payload: ImpersonationStart,
    request: Request,
    admin: User = Depends(require_admin_user),
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """
    開始模擬：回傳以目標使用者身分簽發、帶 imp 的 access token。
    token 壽命不超過模擬 session 本身。
    """
    session, _ = await impersonation.begin_impersonation(
        db,
        actor_id=admin.id,
        target_id=payload.target_id,
        ip_address=client_ip(request),
        user_agent=client_user_agent(request),
    )
    target = await db.get(User, payload.target_id)
    token = create_access_token(
        {
            "sub": str(target.id),
            "ver": target.token_version,
            "sid": ctx.session_id,
            "sv": ctx.session_version,
            "imp": session.id,
        },
        expires_minutes=settings.IMPERSONATION_TIMEOUT_MINUTES,
    )
    return ImpersonationStarted(session_id=session.id, access_token=token, expires_at=session.expires_at)


@router.get("", response_model=List[ImpersonationRead])
async def list_active(
    admin: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    return await impersonation.active_impersonations(db)


@router.post("/{session_id}/stop", response_model=ImpersonationRead)
async def stop_impersonation(
    session_id: int,
    payload: ImpersonationStop = ImpersonationStop(),
    admin: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    return await impersonation.end_impersonation(db, session_id, payload.reason, actor_id=admin.id)
