from .threads import (
    ThreadCreate, ThreadUpdate, ThreadFilters, ThreadResponse, ThreadStats,
    ThreadItemCreate, ThreadItemUpdate, ThreadItemResponse,
)
from .auth import TokenPayload, UserResponse, SyncUserResponse, WebhookEvent, WebhookUserData
from .domains import DomainValidationRequest, DomainValidationResponse, DomainInfo

__all__ = ["ThreadCreate", "ThreadUpdate", "ThreadFilters", "ThreadResponse", "ThreadStats",
           "ThreadItemCreate", "ThreadItemUpdate", "ThreadItemResponse",
           "TokenPayload", "UserResponse", "SyncUserResponse", "WebhookEvent", "WebhookUserData",
           "DomainValidationRequest", "DomainValidationResponse", "DomainInfo"]
