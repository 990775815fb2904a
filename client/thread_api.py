"""HTTP adapter for the thread REST API."""
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from .models import ClientThread, ClientThreadItem

logger = logging.getLogger(__name__)


class ThreadApiError(Exception):
    """Non-2xx response from the API."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.reason_phrase


class ThreadApiClient:
    """
    Async client for thread and thread item routes.

    ``transport`` lets the client talk to an in-process app, e.g.
    ``httpx.ASGITransport(app=app)``.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url, headers=headers, transport=transport, timeout=timeout
        )

    async def __aenter__(self) -> "ThreadApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        response = await self._client.request(method, path, **kwargs)
        if response.is_error:
            message = _error_message(response)
            logger.warning(f"{method} {path} failed with {response.status_code}: {message}")
            raise ThreadApiError(response.status_code, message)
        return response.json()

    # Threads
    async def get_threads(
        self,
        pinned: Optional[bool] = None,
        domain: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        order_by: Optional[str] = None,
        order_direction: Optional[str] = None,
    ) -> List[ClientThread]:
        params = {
            "pinned": None if pinned is None else str(pinned).lower(),
            "domain": domain,
            "limit": limit,
            "offset": offset,
            "order_by": order_by,
            "order_direction": order_direction,
        }
        data = await self._request(
            "GET", "/threads", params={key: value for key, value in params.items() if value is not None}
        )
        return [ClientThread.model_validate(thread) for thread in data]

    async def get_thread(self, thread_id: str) -> ClientThread:
        return ClientThread.model_validate(await self._request("GET", f"/threads/{thread_id}"))

    async def create_thread(self, title: str, domain: Optional[str] = None, pinned: bool = False) -> ClientThread:
        payload = {"title": title, "domain": domain, "pinned": pinned}
        return ClientThread.model_validate(await self._request("POST", "/threads", json=payload))

    async def update_thread(self, thread_id: str, **changes) -> ClientThread:
        return ClientThread.model_validate(
            await self._request("PATCH", f"/threads/{thread_id}", json=changes)
        )

    async def delete_thread(self, thread_id: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/threads/{thread_id}")

    async def toggle_thread_pin(self, thread_id: str) -> ClientThread:
        return ClientThread.model_validate(await self._request("POST", f"/threads/{thread_id}/pin"))

    async def search_threads(self, query: str, limit: int = 20) -> List[ClientThread]:
        data = await self._request("GET", "/threads/search", params={"q": query, "limit": limit})
        return [ClientThread.model_validate(thread) for thread in data]

    async def get_thread_stats(self) -> Dict[str, int]:
        return await self._request("GET", "/threads/stats")

    async def clear_all_threads(self) -> Dict[str, Any]:
        return await self._request("DELETE", "/threads/clear")

    # Thread items
    async def get_thread_items(self, thread_id: str) -> List[ClientThreadItem]:
        data = await self._request("GET", f"/threads/{thread_id}/items")
        return [ClientThreadItem.model_validate(item) for item in data]

    async def get_thread_item(self, thread_id: str, item_id: str) -> ClientThreadItem:
        return ClientThreadItem.model_validate(
            await self._request("GET", f"/threads/{thread_id}/items/{item_id}")
        )

    async def create_thread_item(self, thread_id: str, data: Dict[str, Any]) -> ClientThreadItem:
        return ClientThreadItem.model_validate(
            await self._request("POST", f"/threads/{thread_id}/items", json=data)
        )

    async def update_thread_item(self, thread_id: str, item_id: str, data: Dict[str, Any]) -> ClientThreadItem:
        return ClientThreadItem.model_validate(
            await self._request("PUT", f"/threads/{thread_id}/items/{item_id}", json=data)
        )

    async def delete_thread_item(self, thread_id: str, item_id: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/threads/{thread_id}/items/{item_id}")

    async def delete_followup_thread_items(self, thread_id: str, item_id: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/threads/{thread_id}/items/{item_id}/followups")

    # Chat workflow
    async def stream_chat(self, request: Dict[str, Any]) -> AsyncIterator[Tuple[str, Any]]:
        """Run the chat workflow, yielding ``(event, data)`` pairs as they arrive."""
        async with self._client.stream("POST", "/stream", json=request) as response:
            if response.is_error:
                await response.aread()
                raise ThreadApiError(response.status_code, _error_message(response))

            event, data_lines = None, []
            async for line in response.aiter_lines():
                if not line:
                    if event is not None:
                        yield event, json.loads("\n".join(data_lines)) if data_lines else None
                    event, data_lines = None, []
                elif line.startswith("event:"):
                    event = line[len("event:"):].strip()
                elif line.startswith("data:"):
                    data_lines.append(line[len("data:"):].strip())
