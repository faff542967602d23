from datetime import datetime
from typing import Optional
from sqlalchemy import Boolean, String, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from account_guard.models.base import Base


class UserDevice(Base):
    """
    一個登入 session 對應一筆裝置紀錄。
    device_id 只在同一使用者內唯一：(user_id, device_id) 複合 unique，
    同一台裝置可以登入不同帳號而不互相覆蓋。
    """

    __tablename__ = "user_devices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False)

    device_type: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    browser: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    platform: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    is_trusted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # 撤銷後重新登入會 +1，舊 token（sv 不符）不會跟著復活
    session_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_used_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # 被踢出 / 撤銷的 session，帶此 sid 的 access token 立即失效
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "device_id", name="uq_user_devices_user_device"),
    )

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None


class TrustedDevice(Base):
    """記住此裝置：持有有效 token 的登入可略過 2FA。"""

    __tablename__ = "trusted_devices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    user_device_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("user_devices.id", ondelete="CASCADE"), nullable=True
    )
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    fingerprint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    device_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("token_hash", name="uq_trusted_devices_token_hash"),
    )
