# account_guard/api/v1/router.py
from fastapi import APIRouter

# 匯入所有已定義的 endpoint 模組
from .endpoints import appeals, audit, auth, bans, devices, health, impersonation, ping

# === API v1 主路由 ===
api_router = APIRouter()

# 系統健康檢查
api_router.include_router(health.router, prefix="/health", tags=["health"])

# ping 用於連線測試
api_router.include_router(ping.router, prefix="/ping", tags=["ping"])

# 認證 / 登入 / 2FA
api_router.include_router(auth.router, prefix="/auth", tags=["auth"])

# 封鎖（管理員）
api_router.include_router(bans.router, prefix="/bans", tags=["bans"])

# 封鎖申訴
api_router.include_router(appeals.router, prefix="/appeals", tags=["appeals"])

# 裝置 / session
api_router.include_router(devices.router, prefix="/devices", tags=["devices"])

# 模擬身分（管理員）
api_router.include_router(impersonation.router, prefix="/impersonation", tags=["impersonation"])

# 稽核紀錄（管理員）
api_router.include_router(audit.router, prefix="/audit", tags=["audit"])
