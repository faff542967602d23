# account_guard/schemas/impersonation.py
from typing import Literal, Optional
from datetime import datetime
from pydantic import BaseModel

class ImpersonationStart(BaseModel):
    target_id: int

class ImpersonationStarted(BaseModel):
    session_id: int
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime

class ImpersonationStop(BaseModel):
    reason: Literal["manual", "admin_terminated"] = "manual"

class ImpersonationRead(BaseModel):
    id: int
    impersonator_id: Optional[int]
    target_id: Optional[int]
    started_at: datetime
    expires_at: datetime
    ended_at: Optional[datetime]
    end_reason: Optional[str]

    class Config:
        from_attributes = True
