# account_guard/schemas/appeals.py
from typing import List, Literal, Optional
from datetime import datetime
from pydantic import BaseModel, Field

class AppealCreate(BaseModel):
    appeal_url_token: str
    reason: str
    terms_accepted: bool = False
    evidence_path: Optional[str] = Field(None, max_length=255)

class AppealCreated(BaseModel):
    appeal_id: int
    status: str
    # 查詢狀態用，只回傳這一次
    appeal_token: str

class AppealRead(BaseModel):
    id: int
    user_ban_id: int
    status: str
    reason: str
    admin_response: Optional[str] = None
    additional_info: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class AppealAdminRead(AppealRead):
    user_id: int
    evidence_path: Optional[str] = None
    reviewed_by: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

class AppealPage(BaseModel):
    items: List[AppealAdminRead]
    total: int
    page: int
    page_size: int

class AppealReview(BaseModel):
    decision: Literal["approved", "rejected", "more_info_requested"]
    admin_response: Optional[str] = None

class AdditionalInfo(BaseModel):
    appeal_token: str
    info: str

class AppealTokenRotated(BaseModel):
    appeal_id: int
    appeal_token: str

class AppealStats(BaseModel):
    total: int
    pending: int
    approved: int
    rejected: int
    awaiting_info: int
    approval_rate: float
