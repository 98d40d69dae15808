from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr


class ProvisionRequest(BaseModel):
    """Sent by the identity provider when an account is created"""
    user_id: str
    email: EmailStr
    display_name: Optional[str] = None
    referral_code: Optional[str] = None


class UserResponse(BaseModel):
    id: str
    email: str
    display_name: Optional[str] = None
    referral_code: Optional[str] = None
    referred_by: Optional[str] = None
    referred_at: Optional[datetime] = None
    is_platform_admin: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class NotificationResponse(BaseModel):
    id: str
    type: str
    title: str
    body: str
    data: Optional[dict] = None
    is_read: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
