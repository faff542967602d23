# account_guard/schemas/audit.py
from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel

class AuditLogRead(BaseModel):
    id: int
    actor_id: Optional[int] = None
    action: str
    severity: str
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True

class AuditLogDetail(AuditLogRead):
    # 對象仍存在於資料庫（已刪除或標籤未知為 False）
    target_found: bool = False

class AuditLogPage(BaseModel):
    items: List[AuditLogRead]
    total: int
    page: int
    page_size: int
