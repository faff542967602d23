# account_guard/core/security.py
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pyotp
from jose import jwt, JWTError
from passlib.context import CryptContext

from account_guard.core.config import settings

# === Password Hashing ===
pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__ident="2b",
    # 若密碼超過 72 bytes，不拋錯（與現有流程相容）
    bcrypt__truncate_error=False,
)

def _sanitize_password(p: str) -> str:
    # bcrypt 只吃前 72 bytes，避免極長密碼在某些環境報錯
    return p[:72] if isinstance(p, str) else p

def hash_password(plain: str) -> str:
    return pwd_context.hash(_sanitize_password(plain))

def verify_password(plain: str, password_hash: str) -> bool:
    return pwd_context.verify(_sanitize_password(plain), password_hash)

# === Time ===
def utcnow() -> datetime:
    """DB 一律存 naive UTC。"""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def _now_utc() -> datetime:
    return datetime.now(timezone.utc)

def _exp(minutes: int) -> datetime:
    return _now_utc() + timedelta(minutes=minutes)

# === Opaque tokens（只存 hash，不存明文） ===
def generate_token(nbytes: int = 48) -> str:
    return secrets.token_urlsafe(nbytes)

def hash_token(raw: str) -> str:
    """sha256 hex，固定 64 字元，對應各表的 token 欄位長度。"""
    return hashlib.sha256((raw or "").encode("utf-8")).hexdigest()

def tokens_match(raw: str, stored_hash: Optional[str]) -> bool:
    if not stored_hash:
        return False
    return hmac.compare_digest(hash_token(raw), stored_hash)

def hmac_token(*parts: Any) -> str:
    """以 SECRET_KEY 簽出的隨機 token（模擬身分用）。"""
    data = "|".join(str(p) for p in parts) + "|" + secrets.token_hex(16)
    return hmac.new(settings.SECRET_KEY.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).hexdigest()

def device_fingerprint(user_agent: Optional[str], ip: Optional[str]) -> str:
    return hash_token(f"{user_agent or ''}|{ip or ''}")

# === TOTP / Recovery codes ===
def new_totp_secret() -> str:
    return pyotp.random_base32()

def verify_totp(secret: str, code: str) -> bool:
    if not secret or not code:
        return False
    return pyotp.TOTP(secret).verify(code.strip(), valid_window=1)

def generate_recovery_codes(count: Optional[int] = None) -> List[str]:
    n = count or settings.RECOVERY_CODE_COUNT
    return [f"{secrets.token_hex(5)}-{secrets.token_hex(5)}" for _ in range(n)]

# === JWT Helpers ===
def _encode(claims: Dict[str, Any], key: str) -> str:
    return jwt.encode(claims, key, algorithm=settings.JWT_ALGORITHM)

def _decode(token: str, key: str) -> Dict[str, Any]:
    return jwt.decode(token, key, algorithms=[settings.JWT_ALGORITHM])

def create_access_token(data: Dict[str, Any], expires_minutes: Optional[int] = None) -> str:
    """
    簽發 Access Token（加入: type=access, jti, iat, exp）
    呼叫方請在 data 內帶入：
      - sub: 使用者 ID (str)
      - ver: 使用者 token_version (int)
      - sid: 裝置 session ID（user_devices.id）
      - sv: 該 session 的 session_version
      - imp: （選填）模擬身分 session ID
    """
    to_encode = data.copy()
    to_encode.update({
        "type": "access",
        "jti": secrets.token_hex(16),
        "iat": int(_now_utc().timestamp()),
        "exp": _exp(expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES),
    })
    return _encode(to_encode, settings.SECRET_KEY)

def create_two_factor_token(user_id: int, ver: int) -> str:
    """密碼驗證通過、尚待第二因子時發給前端的短效 challenge token。"""
    return _encode({
        "sub": str(user_id),
        "ver": int(ver),
        "type": "2fa",
        "iat": int(_now_utc().timestamp()),
        "exp": _exp(settings.TWO_FACTOR_CHALLENGE_MINUTES),
    }, settings.SECRET_KEY)

# === Verify / Decode ===
def decode_access_token(token: str) -> Dict[str, Any]:
    """
    驗證並解出 Access Token；若 token type 不為 access，會拋錯。
    """
    payload = _decode(token, settings.SECRET_KEY)
    if payload.get("type") != "access":
        raise JWTError("Invalid token type for this endpoint (need access token).")
    return payload

def decode_two_factor_token(token: str) -> Dict[str, Any]:
    payload = _decode(token, settings.SECRET_KEY)
    if payload.get("type") != "2fa":
        raise JWTError("Invalid token type for two-factor verification.")
    return payload
