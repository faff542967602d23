# account_guard/api/v1/endpoints/auth.py
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from account_guard.core.config import settings
from account_guard.core.deps import (
    AuthContext,
    client_ip,
    client_user_agent,
    get_auth_context,
    get_current_user,
)
from account_guard.core.security import (
    create_access_token,
    create_two_factor_token,
    decode_two_factor_token,
    utcnow,
    verify_password,
    verify_totp,
)
from account_guard.db.session import get_db
from account_guard.models.users import User
from account_guard.schemas.auth import (
    LoginResponse,
    RecoveryCodes,
    TwoFactorRequest,
    TwoFactorResponse,
    TwoFactorSetup,
)
from account_guard.schemas.user import MeRead
from account_guard.services import devices, impersonation
from account_guard.services.ban_ledger import is_ip_banned, is_user_currently_banned
from account_guard.services.rate_limit import check_limit_and_hit, reset_success
from account_guard.services.recovery_codes import (
    consume_recovery_code,
    enable_two_factor,
    regenerate_recovery_codes,
)

router = APIRouter(tags=["auth"])

TRUSTED_DEVICE_HEADER = "X-Trusted-Device-Token"


async def _ensure_not_banned(db: AsyncSession, user: User, ip: str) -> None:
    """IP 封鎖與帳號封鎖都回 403（密碼驗證之後才檢查，避免洩漏帳號是否存在）。"""
    if await is_ip_banned(db, ip):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access from this IP address is blocked")
    if await is_user_currently_banned(db, user.id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is banned")


async def _start_session(db: AsyncSession, user: User, ip: str, user_agent: str):
    """
    建立 / 更新裝置 session，套用角色上限，簽發帶 sid 的 access token。
    回傳 (access_token, device, evicted_ids)
    """
    user_id, role, ver = user.id, user.role, user.token_version
    now = utcnow()
    user.last_login_ip = ip
    user.last_login_at = now
    device = await devices.record_login(db, user_id, user_agent=user_agent, ip=ip, now=now)
    evicted = await devices.enforce_session_limit(db, user_id, settings.session_limit_for(role), now=now)
    token = create_access_token(
        {"sub": str(user_id), "ver": ver, "sid": device.id, "sv": device.session_version}
    )
    return token, device, evicted


# === 登入（含 Redis Rate Limit） ===
@router.post("/login", response_model=LoginResponse)
async def login(
    request: Request,
    form_data: OAuth2PasswordRequestForm = Depends(),
    trusted_device_token: Optional[str] = Header(None, alias=TRUSTED_DEVICE_HEADER),
    db: AsyncSession = Depends(get_db),
):
    """
    使用者登入：
      1️⃣ 限流 → 2️⃣ 密碼 → 3️⃣ IP / 帳號封鎖
      4️⃣ 啟用 2FA 且裝置未信任 → 回傳 challenge token
      5️⃣ 否則記錄裝置、套用 session 上限、簽發 access token
    """
    ip = client_ip(request)
    user_agent = client_user_agent(request)
    email = (form_data.username or "").strip()

    allowed, retry_after = await check_limit_and_hit(ip, email)
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many login attempts. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )

    result = await db.execute(select(User).where(User.email == email, User.deleted_at.is_(None)))
    user = result.scalar_one_or_none()

    if not user or not verify_password(form_data.password, user.password_hash):
        # 統一訊息避免帳號探測
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    await _ensure_not_banned(db, user, ip)

    # ✅ 登入成功後清空 email+IP 的嘗試（避免誤鎖）
    await reset_success(ip, email)

    if user.two_factor_enabled and not await devices.is_device_trusted(
        db, user.id, trusted_device_token, user_agent=user_agent, ip=ip
    ):
        return LoginResponse(
            two_factor_required=True,
            two_factor_token=create_two_factor_token(user.id, user.token_version),
        )

    token, _, evicted = await _start_session(db, user, ip, user_agent)
    return LoginResponse(access_token=token, evicted_sessions=evicted)


# === 第二因子（TOTP 或 recovery code） ===
@router.post("/two-factor", response_model=TwoFactorResponse)
async def two_factor(
    payload: TwoFactorRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    invalid = HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid two-factor code")
    try:
        claims = decode_two_factor_token(payload.two_factor_token)
        user_id = int(claims["sub"])
        ver = int(claims["ver"])
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired challenge")

    result = await db.execute(select(User).where(User.id == user_id, User.deleted_at.is_(None)))
    user = result.scalar_one_or_none()
    if not user or ver != int(user.token_version or 0) or not user.two_factor_enabled:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired challenge")

    ip = client_ip(request)
    user_agent = client_user_agent(request)

    allowed, retry_after = await check_limit_and_hit(ip, user.email)
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many attempts. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )

    if payload.code:
        if not verify_totp(user.two_factor_secret, payload.code):
            raise invalid
    elif payload.recovery_code:
        if not await consume_recovery_code(
            db, user, payload.recovery_code, ip_address=ip, user_agent=user_agent
        ):
            raise invalid
    else:
        raise HTTPException(status_code=422, detail="code or recovery_code is required")

    await _ensure_not_banned(db, user, ip)
    await reset_success(ip, user.email)

    token, device, evicted = await _start_session(db, user, ip, user_agent)
    remember = None
    if payload.remember_device:
        _, remember = await devices.mark_trusted(db, device.id, user_agent=user_agent, ip=ip)
    return TwoFactorResponse(access_token=token, trusted_device_token=remember, evicted_sessions=evicted)


@router.post("/two-factor/setup", response_model=TwoFactorSetup)
async def two_factor_setup(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """啟用 2FA（或重新產生 recovery codes）；明文只回傳一次。"""
    codes = await enable_two_factor(db, current_user)
    return TwoFactorSetup(secret=current_user.two_factor_secret, recovery_codes=codes)


@router.post("/two-factor/recovery-codes", response_model=RecoveryCodes)
async def regenerate_codes(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """重新產生 recovery codes（需已啟用 2FA）。"""
    if ctx.is_impersonating:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed while impersonating")
    codes = await regenerate_recovery_codes(db, ctx.user)
    return RecoveryCodes(recovery_codes=codes)


# === 單次登出 ===
@router.post("/logout", response_model=dict)
async def logout(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """
    撤銷目前的 session（sid），帶此 sid 的 token 立即失效。
    模擬身分中登出只結束模擬，不影響管理員自己的 session。
    """
    if ctx.is_impersonating:
        await impersonation.end_impersonation(db, ctx.impersonation_id, impersonation.END_LOGOUT)
        return {"detail": "Impersonation ended"}
    await devices.revoke_device(db, ctx.user.id, ctx.session_id)
    return {"detail": "Logged out"}


# === 登出全部 ===
@router.post("/logout-all", response_model=dict)
async def logout_all(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """
    全部登出：
      - token_version 自增 → 舊 token 全失效
      - 撤銷所有 session 與信任裝置
    """
    if ctx.is_impersonating:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed while impersonating")
    user = ctx.user
    user.token_version = int(user.token_version or 0) + 1
    await devices.revoke_trusted_devices(db, user.id, commit=False)
    await devices.revoke_all_except_current(db, user.id, None)
    return {"detail": "Logged out from all devices"}


# === 驗證 Token ===
@router.get("/me", response_model=MeRead)
async def read_me(ctx: AuthContext = Depends(get_auth_context)):
    me = MeRead.model_validate(ctx.user)
    me.impersonated_by = ctx.impersonator_id
    return me
