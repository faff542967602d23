# account_guard/api/v1/endpoints/appeals.py
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from account_guard.core.deps import client_ip, client_user_agent, require_admin_user
from account_guard.db.session import get_db
from account_guard.models.users import User
from account_guard.schemas.appeals import (
    AdditionalInfo,
    AppealAdminRead,
    AppealCreate,
    AppealCreated,
    AppealPage,
    AppealRead,
    AppealReview,
    AppealStats,
    AppealTokenRotated,
)
from account_guard.services import appeals
from account_guard.services.ban_ledger import validate_appeal_url_token

router = APIRouter()

APPEAL_TOKEN_HEADER = "X-Appeal-Token"


# === 使用者端（被封鎖者無法登入，改以 token 驗證） ===
@router.post("", response_model=AppealCreated, status_code=status.HTTP_201_CREATED)
async def submit_appeal(
    payload: AppealCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """以申訴連結 token 送出申訴；回傳的 appeal_token 用來查詢進度。"""
    ban = await validate_appeal_url_token(db, payload.appeal_url_token)
    appeal, raw = await appeals.submit_appeal(
        db,
        ban_id=ban.id,
        user_id=ban.user_id,
        reason=payload.reason,
        terms_accepted=payload.terms_accepted,
        evidence_path=payload.evidence_path,
        ip_address=client_ip(request),
        user_agent=client_user_agent(request),
    )
    return AppealCreated(appeal_id=appeal.id, status=appeal.status, appeal_token=raw)


@router.get("/status", response_model=AppealRead)
async def appeal_status(
    appeal_token: str = Header(..., alias=APPEAL_TOKEN_HEADER),
    db: AsyncSession = Depends(get_db),
):
    return await appeals.validate_appeal_token(db, appeal_token)


@router.post("/status/info", response_model=AppealRead)
async def submit_additional_info(payload: AdditionalInfo, db: AsyncSession = Depends(get_db)):
    """回覆管理員的補件要求，申訴回到 pending。"""
    return await appeals.submit_additional_info(db, payload.appeal_token, payload.info)


# === 管理員 ===
@router.get("", response_model=AppealPage)
async def list_appeals(
    status_filter: Optional[str] = Query(None, alias="status"),
    user_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(15, ge=1, le=100),
    admin: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    items, total = await appeals.list_appeals(db, status_filter, user_id, page, page_size)
    return AppealPage(
        items=[AppealAdminRead.model_validate(a) for a in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/statistics", response_model=AppealStats)
async def appeal_statistics(
    admin: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    stats = await appeals.get_appeal_statistics(db)
    return AppealStats(
        total=stats.total,
        pending=stats.pending,
        approved=stats.approved,
        rejected=stats.rejected,
        awaiting_info=stats.awaiting_info,
        approval_rate=stats.approval_rate,
    )


@router.get("/{appeal_id}", response_model=AppealAdminRead)
async def get_appeal(
    appeal_id: int,
    admin: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    return await appeals.get_appeal(db, appeal_id)


@router.post("/{appeal_id}/review", response_model=AppealAdminRead)
async def review_appeal(
    appeal_id: int,
    payload: AppealReview,
    admin: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    return await appeals.review_appeal(
        db,
        appeal_id,
        reviewer_id=admin.id,
        decision=payload.decision,
        admin_response=payload.admin_response,
    )


@router.post("/{appeal_id}/rotate-token", response_model=AppealTokenRotated)
async def rotate_token(
    appeal_id: int,
    admin: User = Depends(require_admin_user),
    db: AsyncSession = Depends(get_db),
):
    raw = await appeals.rotate_appeal_token(db, appeal_id)
    return AppealTokenRotated(appeal_id=appeal_id, appeal_token=raw)
