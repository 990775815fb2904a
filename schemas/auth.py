"""Identity schemas for tokens, users and lifecycle webhooks."""
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict


class TokenPayload(BaseModel):
    """Claims read from an identity provider token."""
    sub: str  # subject (user id)
    exp: Optional[int] = None
    iat: Optional[int] = None
    email: Optional[str] = None
    name: Optional[str] = None


class UserResponse(BaseModel):
    """Schema for user responses."""
    id: str
    email: str
    name: Optional[str]
    role: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SyncUserResponse(BaseModel):
    """Result of a user sync request."""
    message: str
    user_id: str
    timestamp: Optional[datetime] = None


class WebhookEmailAddress(BaseModel):
    email_address: str
    id: Optional[str] = None


class WebhookUserData(BaseModel):
    """User payload of an identity lifecycle event."""
    id: str
    email_addresses: List[WebhookEmailAddress] = []
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @property
    def primary_email(self) -> Optional[str]:
        return self.email_addresses[0].email_address if self.email_addresses else None

    @property
    def full_name(self) -> Optional[str]:
        return f"{self.first_name or ''} {self.last_name or ''}".strip() or None


class WebhookEvent(BaseModel):
    """Identity provider lifecycle event (user.created, user.updated, user.deleted)."""
    type: str
    data: Dict[str, Any]
