from datetime import datetime
from typing import Optional
from sqlalchemy import Boolean, String, Integer, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column
from account_guard.models.base import Base


class UserBan(Base):
    """封鎖紀錄：一列對應一次處分；expires_at 為 NULL 代表永久。"""

    __tablename__ = "user_bans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    # IP-only 封鎖時為 NULL
    user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True
    )
    banned_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    banned_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    is_irrevocable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    ip_ban: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True, index=True)

    # 申訴連結 token（sha256），同一時間只有一個有效
    appeal_url_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)
    appeal_url_token_rotated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    appeal_url_token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    revoked_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    @property
    def is_permanent(self) -> bool:
        return self.expires_at is None

    def is_in_force(self, now: datetime) -> bool:
        """is_active 且未過期；過期不另外掃描，讀取時判斷。"""
        return bool(self.is_active) and (self.expires_at is None or self.expires_at > now)
