from datetime import datetime
from typing import List, Optional
from sqlalchemy import JSON, String, Integer, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from account_guard.models.base import Base

USER_STATUS_ACTIVE = "active"
USER_STATUS_BANNED = "banned"

ROLE_ADMIN = "admin"
ROLE_USER = "user"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    # admin / editor / moderator / user（決定同時登入上限）
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=ROLE_USER)
    # 反正規化欄位：必須與 user_bans 一致，由 status_sync 校正
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=USER_STATUS_ACTIVE, index=True)
    token_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)  # 用於登出全部機制

    two_factor_secret: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # 只存 recovery code 的 sha256
    two_factor_recovery_codes: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)

    last_login_ip: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def two_factor_enabled(self) -> bool:
        return bool(self.two_factor_secret)
