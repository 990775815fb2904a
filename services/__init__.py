from .threads import ThreadService, ThreadItemService
from .auth import AuthService, WebhookPayloadError

__all__ = ["ThreadService", "ThreadItemService", "AuthService", "WebhookPayloadError"]
