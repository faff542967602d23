# account_guard/api/v1/endpoints/devices.py
from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from account_guard.core.config import settings
from account_guard.core.deps import AuthContext, get_auth_context
from account_guard.db.session import get_db
from account_guard.schemas.devices import (
    DeviceRead,
    EvictedSessions,
    RevokedSessions,
    TrustedDeviceRead,
)
from account_guard.services import devices

router = APIRouter()


@router.get("", response_model=List[DeviceRead], summary="Active sessions of the current user")
async def list_devices(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    out = []
    for d in await devices.list_devices(db, ctx.user.id):
        item = DeviceRead.model_validate(d)
        item.is_current = d.id == ctx.session_id
        out.append(item)
    return out


@router.post("/revoke-others", response_model=RevokedSessions)
async def revoke_others(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """登出目前以外的所有裝置"""
    revoked = await devices.revoke_all_except_current(db, ctx.user.id, ctx.session_id)
    return RevokedSessions(revoked=revoked)


@router.post("/enforce-limit", response_model=EvictedSessions)
async def enforce_limit(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    limit = settings.session_limit_for(ctx.user.role)
    evicted = await devices.enforce_session_limit(db, ctx.user.id, limit)
    return EvictedSessions(limit=limit, evicted=evicted)


@router.get("/trusted", response_model=List[TrustedDeviceRead])
async def list_trusted(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await devices.list_trusted_devices(db, ctx.user.id)


@router.delete("/trusted/{trusted_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_trusted(
    trusted_id: int,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await devices.revoke_trusted_device(db, ctx.user.id, trusted_id)


@router.delete("/trusted", response_model=RevokedSessions)
async def revoke_all_trusted(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return RevokedSessions(revoked=await devices.revoke_trusted_devices(db, ctx.user.id))


@router.delete("/{device_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_device(
    device_id: int,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await devices.revoke_device(db, ctx.user.id, device_id)
