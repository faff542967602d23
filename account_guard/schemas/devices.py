# account_guard/schemas/devices.py
from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel

class DeviceRead(BaseModel):
    id: int
    device_type: Optional[str]
    browser: Optional[str]
    platform: Optional[str]
    ip_address: Optional[str]
    country: Optional[str]
    city: Optional[str]
    is_trusted: bool
    last_used_at: datetime
    created_at: datetime
    is_current: bool = False

    class Config:
        from_attributes = True

class TrustedDeviceRead(BaseModel):
    id: int
    user_device_id: Optional[int]
    device_name: Optional[str]
    ip_address: Optional[str]
    expires_at: datetime
    last_used_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True

class RevokedSessions(BaseModel):
    revoked: int

class EvictedSessions(BaseModel):
    limit: int
    evicted: List[int]
