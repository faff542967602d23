# account_guard/services/appeals.py
"""
封鎖申訴流程。

狀態機：
    pending ──► approved / rejected（終態）
            └─► more_info_requested ──► pending（使用者補件）
                                     └─► approved / rejected / more_info_requested

一筆封鎖只能有一筆申訴，由 ban_appeals.user_ban_id 的 unique constraint 保證；
同時送出時，慢的那一方會在 INSERT 撞到 IntegrityError → ConflictError。
"""
import ipaddress
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from account_guard.core.config import settings
from account_guard.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from account_guard.core.security import generate_token, hash_token, utcnow
from account_guard.models.appeals import (
    APPEAL_APPROVED,
    APPEAL_MORE_INFO,
    APPEAL_PENDING,
    APPEAL_REJECTED,
    APPEAL_STATUSES,
    BanAppeal,
)
from account_guard.services import audit
from account_guard.services.ban_ledger import deactivate_ban, get_ban, require_admin
from account_guard.services.rate_limit import check_appeal_limit_and_hit

logger = logging.getLogger(__name__)

INVALID_APPEAL_TOKEN = "Appeal not found"

_TAG_RE = re.compile(r"<[^>]*>")
_URL_RE = re.compile(r"https?://", re.IGNORECASE)


def sanitize_text(text: Optional[str]) -> str:
    """去除 HTML 標籤與前後空白。"""
    return _TAG_RE.sub("", text or "").strip()


def contains_spam_patterns(text: str) -> bool:
    """
    垃圾內容偵測：
      - 同一字元連續重複超過 APPEAL_MAX_CHAR_REPETITION 次
      - URL 超過 APPEAL_MAX_URLS 個
      - 命中關鍵字
    """
    limit = int(settings.APPEAL_MAX_CHAR_REPETITION)
    if re.search(r"(.)\1{%d,}" % limit, text):
        return True
    if len(_URL_RE.findall(text)) > int(settings.APPEAL_MAX_URLS):
        return True
    lowered = text.lower()
    return any(keyword in lowered for keyword in settings.APPEAL_SPAM_KEYWORDS)


def _clean_ip(ip: Optional[str]) -> str:
    try:
        return str(ipaddress.ip_address((ip or "").strip()))
    except ValueError:
        return "0.0.0.0"


def _clean_user_agent(user_agent: Optional[str]) -> str:
    return sanitize_text(user_agent or "Unknown")[:500]


async def _existing_appeal(db: AsyncSession, ban_id: int) -> Optional[BanAppeal]:
    res = await db.execute(select(BanAppeal).where(BanAppeal.user_ban_id == ban_id))
    return res.scalar_one_or_none()


async def get_appeal(db: AsyncSession, appeal_id: int) -> BanAppeal:
    appeal = await db.get(BanAppeal, appeal_id)
    if appeal is None:
        raise NotFoundError("Appeal not found")
    return appeal


async def submit_appeal(
    db: AsyncSession,
    *,
    ban_id: int,
    user_id: int,
    reason: str,
    terms_accepted: bool,
    evidence_path: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[BanAppeal, str]:
    """
    建立申訴，回傳 (appeal, 明文 token)。
    明文 token 只在這裡出現一次，DB 只存 sha256，之後無法找回。
    """
    now = now or utcnow()
    ban = await get_ban(db, ban_id)

    if ban.user_id is None or ban.user_id != user_id:
        raise AuthorizationError("You can only appeal your own ban")
    if ban.is_irrevocable:
        raise ConflictError("This ban is irrevocable and cannot be appealed")
    if not ban.is_in_force(now):
        raise ConflictError("This ban is not active")
    if await _existing_appeal(db, ban.id) is not None:
        raise ConflictError("An appeal already exists for this ban")

    if not terms_accepted:
        raise ValidationError("Terms must be accepted to submit an appeal")
    clean_reason = sanitize_text(reason)
    if len(clean_reason) < settings.APPEAL_REASON_MIN_LENGTH:
        raise ValidationError(
            f"Appeal reason must be at least {settings.APPEAL_REASON_MIN_LENGTH} characters"
        )
    if len(clean_reason) > settings.APPEAL_REASON_MAX_LENGTH:
        raise ValidationError(
            f"Appeal reason cannot exceed {settings.APPEAL_REASON_MAX_LENGTH} characters"
        )
    if contains_spam_patterns(clean_reason):
        raise ValidationError("Appeal content contains suspicious patterns")

    # 短時間內重複送出（跨封鎖）
    window_start = now - timedelta(minutes=settings.APPEAL_DUPLICATE_WINDOW_MINUTES)
    recent = await db.execute(
        select(BanAppeal.id).where(BanAppeal.user_id == user_id, BanAppeal.created_at > window_start).limit(1)
    )
    if recent.scalar_one_or_none() is not None:
        raise RateLimitedError(
            "An appeal was submitted recently. Please wait before submitting another.",
            retry_after=settings.APPEAL_DUPLICATE_WINDOW_MINUTES * 60,
        )
    allowed, retry_after = await check_appeal_limit_and_hit(user_id)
    if not allowed:
        raise RateLimitedError("Too many appeal attempts. Please try again later.", retry_after=retry_after)

    raw_token = generate_token()
    appeal = BanAppeal(
        user_ban_id=ban.id,
        user_id=user_id,
        reason=clean_reason,
        evidence_path=evidence_path,
        status=APPEAL_PENDING,
        appeal_token=hash_token(raw_token),
        appeal_token_rotated_at=now,
        ip_address=_clean_ip(ip_address),
        user_agent=_clean_user_agent(user_agent),
        terms_accepted=True,
        created_at=now,
        updated_at=now,
    )
    try:
        db.add(appeal)
        # 申訴連結只能用一次
        ban.appeal_url_token = None
        ban.appeal_url_token_expires_at = None
        await db.flush()
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.warning("Duplicate appeal rejected by constraint: ban_id=%s user_id=%s", ban_id, user_id)
        raise ConflictError("An appeal already exists for this ban")
    except Exception:
        await db.rollback()
        raise

    # token 不寫進 log
    logger.info(
        "Ban appeal submitted: appeal_id=%s user_id=%s ban_id=%s has_evidence=%s",
        appeal.id, user_id, ban.id, evidence_path is not None,
    )
    return appeal, raw_token


async def validate_appeal_token(db: AsyncSession, raw_token: str) -> BanAppeal:
    """以 hash 查申訴；明文 token 從不落地。"""
    if not raw_token:
        raise NotFoundError(INVALID_APPEAL_TOKEN)
    res = await db.execute(select(BanAppeal).where(BanAppeal.appeal_token == hash_token(raw_token)))
    appeal = res.scalar_one_or_none()
    if appeal is None:
        logger.warning("Appeal token lookup failed: reason=unknown_token")
        raise NotFoundError(INVALID_APPEAL_TOKEN)
    return appeal


async def rotate_appeal_token(
    db: AsyncSession, appeal_id: int, now: Optional[datetime] = None
) -> str:
    """重新發一組狀態查詢 token；單次 UPDATE 覆寫 hash，舊 token 立即失效。"""
    now = now or utcnow()
    appeal = await get_appeal(db, appeal_id)
    raw = generate_token()
    try:
        await db.execute(
            update(BanAppeal)
            .where(BanAppeal.id == appeal.id)
            .values(appeal_token=hash_token(raw), appeal_token_rotated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return raw


def _validate_admin_response(response: Optional[str]) -> str:
    text = sanitize_text(response)
    if len(text) < settings.APPEAL_ADMIN_RESPONSE_MIN_LENGTH:
        raise ValidationError(
            f"Response must be at least {settings.APPEAL_ADMIN_RESPONSE_MIN_LENGTH} characters"
        )
    if len(text) > settings.APPEAL_ADMIN_RESPONSE_MAX_LENGTH:
        raise ValidationError(
            f"Response cannot exceed {settings.APPEAL_ADMIN_RESPONSE_MAX_LENGTH} characters"
        )
    return text


async def review_appeal(
    db: AsyncSession,
    appeal_id: int,
    *,
    reviewer_id: Optional[int],
    decision: str,
    admin_response: Optional[str] = None,
    now: Optional[datetime] = None,
) -> BanAppeal:
    """
    管理員審核：approved / rejected / more_info_requested。
    核准時在同一交易內撤銷封鎖並校正 users.status。
    """
    now = now or utcnow()
    reviewer = await require_admin(db, reviewer_id)
    appeal = await get_appeal(db, appeal_id)

    if decision not in (APPEAL_APPROVED, APPEAL_REJECTED, APPEAL_MORE_INFO):
        raise ValidationError("Decision must be approved, rejected or more_info_requested")
    if not appeal.can_be_reviewed:
        raise ConflictError("This appeal has already been reviewed")

    if decision == APPEAL_APPROVED:
        response = sanitize_text(admin_response) or None
        if response and len(response) > settings.APPEAL_ADMIN_RESPONSE_MAX_LENGTH:
            raise ValidationError(
                f"Response cannot exceed {settings.APPEAL_ADMIN_RESPONSE_MAX_LENGTH} characters"
            )
    else:
        response = _validate_admin_response(admin_response)

    old_status = appeal.status
    try:
        appeal.status = decision
        appeal.admin_response = response
        appeal.reviewed_by = reviewer.id
        appeal.reviewed_at = now
        appeal.updated_at = now

        if decision == APPEAL_APPROVED:
            ban = await get_ban(db, appeal.user_ban_id)
            await deactivate_ban(db, ban, reviewer, now, action="ban.revoke_via_appeal")

        await audit.log_action(
            db,
            reviewer.id,
            "appeal.review",
            target_type="appeal",
            target_id=appeal.id,
            details={"old_status": old_status, "new_status": decision, "ban_id": appeal.user_ban_id},
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Ban appeal reviewed: appeal_id=%s %s -> %s by=%s", appeal.id, old_status, decision, reviewer.id
    )
    return appeal


async def submit_additional_info(
    db: AsyncSession, raw_token: str, info: str, now: Optional[datetime] = None
) -> BanAppeal:
    """使用者回覆「需要更多資訊」：存下補充內容，狀態回到 pending 等待再審。"""
    now = now or utcnow()
    appeal = await validate_appeal_token(db, raw_token)
    if appeal.status != APPEAL_MORE_INFO:
        raise ConflictError("This appeal is not waiting for more information")

    text = sanitize_text(info)
    if len(text) < settings.APPEAL_INFO_MIN_LENGTH:
        raise ValidationError(f"Information must be at least {settings.APPEAL_INFO_MIN_LENGTH} characters")
    if len(text) > settings.APPEAL_REASON_MAX_LENGTH:
        raise ValidationError(f"Information cannot exceed {settings.APPEAL_REASON_MAX_LENGTH} characters")
    if contains_spam_patterns(text):
        raise ValidationError("Appeal content contains suspicious patterns")

    try:
        appeal.additional_info = text
        appeal.additional_info_at = now
        appeal.status = APPEAL_PENDING
        appeal.updated_at = now
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return appeal


async def list_appeals(
    db: AsyncSession,
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    page: int = 1,
    page_size: int = 15,
) -> Tuple[List[BanAppeal], int]:
    if status is not None and status != "all" and status not in APPEAL_STATUSES:
        raise ValidationError(f"Unknown appeal status: {status}")

    q = select(BanAppeal)
    if status and status != "all":
        q = q.where(BanAppeal.status == status)
    if user_id is not None:
        q = q.where(BanAppeal.user_id == user_id)

    total = await db.scalar(select(func.count()).select_from(q.subquery())) or 0
    page = max(1, page)
    q = q.order_by(BanAppeal.created_at.desc(), BanAppeal.id.desc()).offset((page - 1) * page_size).limit(page_size)
    res = await db.execute(q)
    return list(res.scalars().all()), int(total)


@dataclass
class AppealStatistics:
    total: int
    pending: int
    approved: int
    rejected: int
    awaiting_info: int

    @property
    def approval_rate(self) -> float:
        reviewed = self.approved + self.rejected
        if reviewed == 0:
            return 0.0
        return round(self.approved / reviewed * 100, 2)


async def get_appeal_statistics(db: AsyncSession) -> AppealStatistics:
    res = await db.execute(select(BanAppeal.status, func.count()).group_by(BanAppeal.status))
    counts = {status: int(n) for status, n in res.all()}
    return AppealStatistics(
        total=sum(counts.values()),
        pending=counts.get(APPEAL_PENDING, 0),
        approved=counts.get(APPEAL_APPROVED, 0),
        rejected=counts.get(APPEAL_REJECTED, 0),
        awaiting_info=counts.get(APPEAL_MORE_INFO, 0),
    )