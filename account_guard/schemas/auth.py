from typing import List, Optional
from pydantic import BaseModel, Field

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"

class LoginResponse(BaseModel):
    """
    密碼驗證成功後的回應：
      - 不需要 2FA（或裝置已信任）→ access_token
      - 需要 2FA → two_factor_required + two_factor_token（短效 challenge）
    """
    access_token: Optional[str] = None
    token_type: str = "bearer"
    two_factor_required: bool = False
    two_factor_token: Optional[str] = None
    evicted_sessions: List[int] = []

class TwoFactorRequest(BaseModel):
    two_factor_token: str
    code: Optional[str] = None
    recovery_code: Optional[str] = None
    remember_device: bool = False

class TwoFactorResponse(Token):
    trusted_device_token: Optional[str] = None
    evicted_sessions: List[int] = []

class TwoFactorSetup(BaseModel):
    secret: str
    recovery_codes: List[str] = Field(..., description="只顯示這一次，請妥善保存")

class RecoveryCodes(BaseModel):
    recovery_codes: List[str] = Field(..., description="舊的 codes 已全部作廢；只顯示這一次")
