# account_guard/core/deps.py
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from account_guard.core.config import settings
from account_guard.core.security import decode_access_token, utcnow
from account_guard.db.session import get_db
from account_guard.models.devices import UserDevice
from account_guard.models.security_logs import ImpersonationSession
from account_guard.models.users import User
from account_guard.services.ban_ledger import is_user_currently_banned
from account_guard.services.devices import touch_session


# OAuth2 Password Flow 設定
oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl=f"{settings.API_V1_PREFIX}/auth/login",
    auto_error=True,
)


@dataclass
class AuthContext:
    user: User
    session_id: int
    session_version: int = 1
    impersonation_id: Optional[int] = None
    impersonator_id: Optional[int] = None

    @property
    def is_impersonating(self) -> bool:
        return self.impersonation_id is not None


def client_ip(request: Request) -> str:
    return (request.client.host if request.client else "unknown") or "unknown"


def client_user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "")


async def get_auth_context(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> AuthContext:
    """
    從 Bearer Access Token 解析目前使用者，並做進階驗證：
      1️⃣ 驗證 JWT、exp 與 type == "access"
      2️⃣ 依 sub 查 DB 取得 User（排除軟刪除）
      3️⃣ 比對 ver == user.token_version（封鎖時會 +1）
      4️⃣ sid 對應的 session 必須存在、未被撤銷，且 sv 與 session 版本一致
      5️⃣ 帶 imp 時，模擬身分 session 必須仍有效
      6️⃣ 仍在封鎖中 → 403
    """
    unauthorized = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired access token",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = decode_access_token(token)
        user_id = int(payload["sub"])
        ver_in_token = int(payload["ver"])
        session_id = int(payload["sid"])
        session_version = int(payload["sv"])
        imp_id = payload.get("imp")
        imp_id = int(imp_id) if imp_id is not None else None
    except Exception:
        raise unauthorized

    # --- 取得使用者 ---
    result = await db.execute(select(User).where(User.id == user_id, User.deleted_at.is_(None)))
    user = result.scalar_one_or_none()
    if not user:
        raise unauthorized

    # --- 版本比對（防止舊 token）---
    if ver_in_token != int(user.token_version or 0):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token invalidated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    now = utcnow()

    # --- session 檢查 ---
    session = await db.get(UserDevice, session_id)
    if (
        session is None
        or session.revoked_at is not None
        or session_version != int(session.session_version or 1)
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session has been revoked",
            headers={"WWW-Authenticate": "Bearer"},
        )

    impersonator_id = None
    if imp_id is not None:
        imp = await db.get(ImpersonationSession, imp_id)
        if imp is None or imp.target_id != user.id or not imp.is_live(now):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Impersonation session has ended",
                headers={"WWW-Authenticate": "Bearer"},
            )
        impersonator_id = imp.impersonator_id
    elif session.user_id != user.id:
        raise unauthorized

    if await is_user_currently_banned(db, user.id, now):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is banned")

    if imp_id is None:
        await touch_session(db, session, now)

    return AuthContext(
        user=user,
        session_id=session.id,
        session_version=session_version,
        impersonation_id=imp_id,
        impersonator_id=impersonator_id,
    )


async def get_current_user(ctx: AuthContext = Depends(get_auth_context)) -> User:
    return ctx.user


async def require_admin_user(ctx: AuthContext = Depends(get_auth_context)) -> User:
    """管理員專用路由；模擬身分中的 token 一律不可使用管理功能。"""
    if ctx.is_impersonating or not ctx.user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrator privileges required")
    return ctx.user
