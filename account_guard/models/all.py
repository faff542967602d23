# 匯入所有模型，讓 Base.metadata 完整（Alembic / 測試 create_all 用）
from account_guard.models.base import Base
from account_guard.models.users import User
from account_guard.models.bans import UserBan
from account_guard.models.appeals import BanAppeal
from account_guard.models.devices import UserDevice, TrustedDevice
from account_guard.models.security_logs import AdminAuditLog, ImpersonationSession, RecoveryCodeUsage

__all__ = [
    "Base",
    "User",
    "UserBan",
    "BanAppeal",
    "UserDevice",
    "TrustedDevice",
    "AdminAuditLog",
    "ImpersonationSession",
    "RecoveryCodeUsage",
]
