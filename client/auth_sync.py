"""Keeps the signed-in user mirrored in the API's user table."""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)

SYNC_ENDPOINT = "/auth/sync-user"


class SyncResult(BaseModel):
    success: bool
    user_id: Optional[str] = None
    error: Optional[str] = None


class AuthSyncClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(base_url=base_url, headers=headers, transport=transport)
        self._sleep = sleep

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, failure: str) -> SyncResult:
        try:
            response = await self._client.request(method, SYNC_ENDPOINT)
        except httpx.HTTPError as e:
            logger.error(f"Network error calling {SYNC_ENDPOINT}: {e}")
            return SyncResult(success=False, error=f"Network error while trying to {failure}")

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_error:
            return SyncResult(success=False, error=body.get("error") or f"Failed to {failure}")
        return SyncResult(success=True, user_id=body.get("user_id"))

    async def sync_user(self) -> SyncResult:
        """Create the caller's user row if it does not exist yet."""
        return await self._call("POST", "sync user")

    async def check_user_sync(self) -> SyncResult:
        return await self._call("GET", "check user sync")

    async def ensure_user_synced(self, max_retries: int = 3) -> SyncResult:
        """Retry ``sync_user`` with exponential backoff (1s, 2s, 4s, ...)."""
        last_error = ""
        for attempt in range(max_retries):
            result = await self.sync_user()
            if result.success:
                return result

            last_error = result.error or "Unknown error"
            if attempt < max_retries - 1:
                delay = 2 ** attempt
                logger.info(f"User sync failed ({last_error}), retrying in {delay}s")
                await self._sleep(delay)

        return SyncResult(
            success=False,
            error=f"Failed to sync user after {max_retries} attempts: {last_error}",
        )
