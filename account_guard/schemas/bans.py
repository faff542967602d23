# account_guard/schemas/bans.py
from typing import Literal, Optional
from datetime import datetime
from pydantic import BaseModel, Field, model_validator

BanDuration = Literal[
    "1_hour", "1_day", "1_week", "1_month", "3_months", "6_months", "1_year", "permanent", "custom",
]

def _resolve_duration(duration: Optional[str], expires_at: Optional[datetime]) -> str:
    # 帶了 expires_at 就視為 custom；與其他時長同時給則拒絕，不默默丟掉到期時間
    if expires_at is not None:
        if duration not in (None, "custom"):
            raise ValueError("expires_at can only be used with duration=custom")
        return "custom"
    return duration or "permanent"

class BanCreate(BaseModel):
    user_id: Optional[int] = None
    ip_address: Optional[str] = None
    reason: str = Field(..., min_length=1, max_length=1000)
    duration: Optional[BanDuration] = None  # 未指定且無 expires_at → permanent
    expires_at: Optional[datetime] = None  # duration=custom 時使用
    is_irrevocable: bool = False
    ip_ban: bool = False
    admin_notes: Optional[str] = Field(None, max_length=2000)

    @model_validator(mode="after")
    def _target_required(self):
        if self.user_id is None and not self.ip_address:
            raise ValueError("user_id or ip_address is required")
        self.duration = _resolve_duration(self.duration, self.expires_at)
        return self

class BanUpdate(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)
    duration: Optional[BanDuration] = None
    expires_at: Optional[datetime] = None
    admin_notes: Optional[str] = Field(None, max_length=2000)

    @model_validator(mode="after")
    def _duration_matches_expiry(self):
        self.duration = _resolve_duration(self.duration, self.expires_at)
        return self

class BanRead(BaseModel):
    id: int
    user_id: Optional[int]
    banned_by: Optional[int]
    reason: str
    banned_at: datetime
    expires_at: Optional[datetime]
    is_active: bool
    is_irrevocable: bool
    is_permanent: bool
    ip_ban: bool
    ip_address: Optional[str]
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[int] = None

    class Config:
        from_attributes = True

class BanAdminRead(BanRead):
    admin_notes: Optional[str] = None

class AppealLink(BaseModel):
    ban_id: int
    appeal_url_token: str
    expires_at: datetime

class BanStatus(BaseModel):
    ip_banned: bool

class SyncResult(BaseModel):
    banned: int
    restored: int
