from .id_map import OptimisticIdMap
from .models import ClientThread, ClientThreadItem
from .thread_api import ThreadApiClient, ThreadApiError
from .auth_sync import AuthSyncClient, SyncResult
from .store import ChatStore, ConfigStorage, Navigator

__all__ = [
    "OptimisticIdMap",
    "ClientThread",
    "ClientThreadItem",
    "ThreadApiClient",
    "ThreadApiError",
    "AuthSyncClient",
    "SyncResult",
    "ChatStore",
    "ConfigStorage",
    "Navigator",
]
