# account_guard/schemas/user.py
from typing import Optional
from datetime import datetime
from pydantic import BaseModel, EmailStr

class UserRead(BaseModel):
    id: int
    email: EmailStr
    name: str
    role: str
    status: str
    two_factor_enabled: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        # Pydantic v2：允許從 ORM 物件轉模型
        from_attributes = True

class MeRead(UserRead):
    # 模擬身分中時，為操作者的 user id
    impersonated_by: Optional[int] = None
