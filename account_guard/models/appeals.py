from datetime import datetime
from typing import Optional
from sqlalchemy import Boolean, String, Integer, DateTime, ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from account_guard.models.base import Base

APPEAL_PENDING = "pending"
APPEAL_APPROVED = "approved"
APPEAL_REJECTED = "rejected"
APPEAL_MORE_INFO = "more_info_requested"

APPEAL_STATUSES = (APPEAL_PENDING, APPEAL_APPROVED, APPEAL_REJECTED, APPEAL_MORE_INFO)
# 仍可被管理員處理的狀態
APPEAL_REVIEWABLE = (APPEAL_PENDING, APPEAL_MORE_INFO)
APPEAL_TERMINAL = (APPEAL_APPROVED, APPEAL_REJECTED)


class BanAppeal(Base):
    __tablename__ = "ban_appeals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    # 一筆封鎖只能有一筆申訴（DB 層 unique，避免並發重複送出）
    user_ban_id: Mapped[int] = mapped_column(
        ForeignKey("user_bans.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    evidence_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=APPEAL_PENDING, index=True)

    admin_response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    additional_info: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    additional_info_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    reviewed_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # 狀態查詢 token（sha256），明文只在建立 / 輪替當下回傳一次
    appeal_token: Mapped[str] = mapped_column(String(64), nullable=False)
    appeal_token_rotated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    terms_accepted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_ban_id", name="uq_ban_appeals_user_ban_id"),
        UniqueConstraint("appeal_token", name="uq_ban_appeals_appeal_token"),
    )

    @property
    def can_be_reviewed(self) -> bool:
        return self.status in APPEAL_REVIEWABLE
