"""
Client-side cache of threads and thread items.

The store applies changes locally first and reconciles with the API
afterwards. Threads and items created locally carry an optimistic id until the
server answers; every operation accepts either id.
"""
import asyncio
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx

from services.domain import get_custom_instructions_for_domain
from .id_map import OptimisticIdMap
from .models import ClientThread, ClientThreadItem
from .thread_api import ThreadApiClient, ThreadApiError

logger = logging.getLogger(__name__)

API_ERRORS = (ThreadApiError, httpx.HTTPError)

CONFIG_KEY = "chat-config"
DEFAULT_CHAT_MODE = "gpt-4.1"
DEFAULT_DOMAIN = "legal"
DEFAULT_THREAD_TITLE = "New Chat"
UPDATE_DEBOUNCE_SECONDS = 1.0
CERTIFICATION_UNCERTIFIED_SLOTS = 3

ITEM_WRITE_FIELDS = (
    "query", "parent_id", "mode", "status", "error", "image_attachment", "tool_calls",
    "tool_results", "steps", "answer", "metadata", "sources", "suggestions", "object",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps coming back from the API are UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Navigator:
    """Where the chat UI currently is."""

    def __init__(self, path: str = "/chat"):
        self.path = path
        self.history: List[str] = [path]

    def replace(self, path: str) -> None:
        """Rewrite the current location without a new history entry."""
        self.path = path
        self.history[-1] = path

    def redirect(self, path: str) -> None:
        self.path = path
        self.history.append(path)


class ConfigStorage:
    """Persisted chat settings, kept in a JSON file when ``path`` is given."""

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._data: Dict[str, Any] = {}
        if path and os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                self._data = json.load(f).get(CONFIG_KEY, {})

    def load(self) -> Dict[str, Any]:
        return dict(self._data)

    def update(self, **values) -> None:
        self._data.update(values)
        if self.path:
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump({CONFIG_KEY: self._data}, f)


class ChatStore:
    def __init__(
        self,
        api: ThreadApiClient,
        navigator: Optional[Navigator] = None,
        config: Optional[ConfigStorage] = None,
    ):
        self.api = api
        self.navigator = navigator or Navigator()
        self.config = config or ConfigStorage()

        self.threads: List[ClientThread] = []
        self.thread_items: List[ClientThreadItem] = []
        self.current_thread_id: Optional[str] = None
        self.current_thread: Optional[ClientThread] = None

        self.chat_mode = DEFAULT_CHAT_MODE
        self.use_web_search = False
        self.show_suggestions = True
        self.custom_instructions = ""
        self.domain = DEFAULT_DOMAIN

        self.is_generating = False
        self.abort_signal: Optional[asyncio.Event] = None
        self.is_loading_thread_items = False

        self.thread_ids = OptimisticIdMap()
        self.item_ids = OptimisticIdMap()

        self._listeners: List[Callable[["ChatStore"], None]] = []
        self._item_loads: Dict[str, asyncio.Task] = {}
        self._pending_updates: Dict[str, asyncio.Task] = {}

    # Change notification
    def subscribe(self, listener: Callable[["ChatStore"], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    # Lookup helpers
    def _find_thread(self, thread_id: str) -> Optional[ClientThread]:
        real_id = self.thread_ids.resolve(thread_id)
        return next((t for t in self.threads if t.id in (thread_id, real_id)), None)

    def _find_item(self, item_id: str) -> Optional[ClientThreadItem]:
        real_id = self.item_ids.resolve(item_id)
        return next((i for i in self.thread_items if i.id in (item_id, real_id)), None)

    def _replace_thread(self, thread_id: str, updated: ClientThread) -> None:
        real_id = self.thread_ids.resolve(thread_id)
        for index, thread in enumerate(self.threads):
            if thread.id in (thread_id, real_id):
                self.threads[index] = updated
                break
        if self.current_thread_id in (thread_id, real_id):
            self.current_thread = updated

    def _put_item(self, item: ClientThreadItem, *match_ids: str) -> None:
        ids = set(match_ids) | {item.id}
        for index, existing in enumerate(self.thread_items):
            if existing.id in ids:
                self.thread_items[index] = item
                return
        self.thread_items.append(item)

    def _items_of(self, thread_id: Optional[str]) -> List[ClientThreadItem]:
        if not thread_id:
            return []
        real_id = self.thread_ids.resolve(thread_id)
        items = [item for item in self.thread_items if item.thread_id in (thread_id, real_id)]
        return sorted(items, key=lambda item: _as_utc(item.created_at))

    # Threads
    async def load_initial_data(self) -> None:
        """Fetch threads newest-first and restore persisted settings."""
        try:
            self.threads = await self.api.get_threads(order_by="created_at", order_direction="desc")
        except API_ERRORS as e:
            logger.error(f"Failed to load initial data: {e}")
            self.threads = []

        config = self.config.load()
        self.chat_mode = config.get("chat_mode") or DEFAULT_CHAT_MODE
        self.use_web_search = config.get("use_web_search") if isinstance(config.get("use_web_search"), bool) else False
        self.show_suggestions = config.get("show_suggestions", True)
        self.custom_instructions = config.get("custom_instructions") or ""

        saved_id = config.get("current_thread_id")
        # A saved selection that no longer exists falls back to the newest thread
        current = (self._find_thread(saved_id) if saved_id else None) or (self.threads[0] if self.threads else None)
        self.current_thread = current
        self.current_thread_id = current.id if current else None
        self._notify()

    async def create_thread(self, optimistic_id: str, title: Optional[str] = None) -> ClientThread:
        title = title or DEFAULT_THREAD_TITLE
        now = utcnow()
        optimistic = ClientThread(
            id=optimistic_id, title=title, domain=self.domain, pinned=False,
            pinned_at=now, created_at=now, updated_at=now,
        )

        self.threads.insert(0, optimistic)
        self.current_thread_id = optimistic_id
        self.current_thread = optimistic
        self._notify()

        try:
            real = await self.api.create_thread(title=title, domain=self.domain, pinned=False)
        except API_ERRORS as e:
            logger.error(f"Failed to create thread: {e}")
            self.threads = [t for t in self.threads if t.id != optimistic_id]
            self.current_thread_id = None
            self.current_thread = None
            self._notify()
            # The caller still gets a usable thread object; it only exists locally.
            return optimistic.model_copy()

        self.thread_ids.set(real.id, optimistic_id)
        for index, thread in enumerate(self.threads):
            if thread.id == optimistic_id:
                self.threads[index] = real
                break
        self.current_thread_id = real.id
        self.current_thread = real

        if optimistic_id in self.navigator.path:
            self.navigator.replace(self.navigator.path.replace(optimistic_id, real.id))

        self._notify()
        return real

    async def get_thread(self, thread_id: str) -> Optional[ClientThread]:
        local = self._find_thread(thread_id)
        if local:
            return local

        try:
            thread = await self.api.get_thread(self.thread_ids.resolve(thread_id))
        except API_ERRORS as e:
            logger.error(f"Failed to get thread {thread_id}: {e}")
            return None

        if not any(t.id == thread.id for t in self.threads):
            self.threads.append(thread)
            self._notify()
        return thread

    async def update_thread(self, thread_id: str, title: str) -> None:
        try:
            updated = await self.api.update_thread(self.thread_ids.resolve(thread_id), title=title)
        except API_ERRORS as e:
            logger.error(f"Failed to update thread {thread_id}: {e}")
            return

        self._replace_thread(thread_id, updated)
        self._notify()

    async def _toggle_pin(self, thread_id: str, action: str) -> None:
        try:
            updated = await self.api.toggle_thread_pin(self.thread_ids.resolve(thread_id))
        except API_ERRORS as e:
            logger.error(f"Failed to {action} thread {thread_id}: {e}")
            return

        self._replace_thread(thread_id, updated)
        self._notify()

    async def pin_thread(self, thread_id: str) -> None:
        await self._toggle_pin(thread_id, "pin")

    async def unpin_thread(self, thread_id: str) -> None:
        await self._toggle_pin(thread_id, "unpin")

    def _drop_thread(self, thread_id: str, real_id: str) -> None:
        self.threads = [t for t in self.threads if t.id not in (thread_id, real_id)]
        self.thread_items = [i for i in self.thread_items if i.thread_id not in (thread_id, real_id)]
        self.thread_ids.clear(real_id)

        next_thread = self.threads[0] if self.threads else None
        self.current_thread_id = next_thread.id if next_thread else None
        self.current_thread = next_thread

    async def delete_thread(self, thread_id: str) -> None:
        real_id = self.thread_ids.resolve(thread_id)
        try:
            await self.api.delete_thread(real_id)
        except API_ERRORS as e:
            logger.error(f"Failed to delete thread {thread_id}: {e}")
            return

        self._drop_thread(thread_id, real_id)
        self._notify()

    async def switch_thread(self, thread_id: str) -> None:
        real_id = self.thread_ids.resolve(thread_id)
        self.config.update(current_thread_id=real_id)
        self.current_thread_id = real_id
        self.current_thread = self._find_thread(thread_id)
        self._notify()
        await self.load_thread_items(real_id)

    async def clear_all_threads(self) -> None:
        try:
            await self.api.clear_all_threads()
        except API_ERRORS as e:
            logger.error(f"Failed to clear all threads: {e}")
            return

        self.threads = []
        self.thread_items = []
        self.current_thread_id = None
        self.current_thread = None
        self._notify()

    # Thread items
    async def _fetch_thread_items(self, real_id: str) -> List[ClientThreadItem]:
        self.is_loading_thread_items = True
        self._notify()
        try:
            items = await self.api.get_thread_items(real_id)
        except API_ERRORS as e:
            logger.error(f"Failed to load thread items for {real_id}: {e}")
            return self._items_of(real_id)
        finally:
            self.is_loading_thread_items = False

        self.thread_items = [i for i in self.thread_items if i.thread_id != real_id] + items
        self._notify()
        return items

    async def load_thread_items(self, thread_id: str) -> List[ClientThreadItem]:
        """Fetch a thread's items; concurrent calls for the same thread share one request."""
        real_id = self.thread_ids.resolve(thread_id)
        task = self._item_loads.get(real_id)
        if task is None:
            task = asyncio.ensure_future(self._fetch_thread_items(real_id))
            self._item_loads[real_id] = task
            task.add_done_callback(lambda _: self._item_loads.pop(real_id, None))
        return await asyncio.shield(task)

    async def get_thread_items(self, thread_id: str) -> List[ClientThreadItem]:
        """Items straight from the API, without touching the cache."""
        try:
            return await self.api.get_thread_items(self.thread_ids.resolve(thread_id))
        except API_ERRORS as e:
            logger.error(f"Failed to get thread items for {thread_id}: {e}")
            return []

    async def create_thread_item(self, item: ClientThreadItem) -> None:
        if not self.current_thread_id:
            return
        real_thread_id = self.thread_ids.resolve(self.current_thread_id)
        payload = item.model_dump(mode="json", include=set(ITEM_WRITE_FIELDS))

        try:
            created = await self.api.create_thread_item(real_thread_id, payload)
        except API_ERRORS as e:
            logger.error(f"Failed to create thread item: {e}")
            existing = self._find_item(item.id)
            self._put_item(item if existing else item.model_copy(update={"thread_id": real_thread_id}))
            self._notify()
            return

        if created.id != item.id:
            self.item_ids.set(created.id, item.id)
        self._put_item(created, item.id)
        self._notify()

    async def update_thread_item(self, thread_id: str, item: Dict[str, Any]) -> None:
        """Apply a partial update; ``item`` must carry the item's ``id``."""
        item_id = item.get("id")
        if not item_id or not thread_id:
            return

        real_thread_id = self.thread_ids.resolve(thread_id)
        real_item_id = self.item_ids.resolve(item_id)
        payload = {key: value for key, value in item.items() if key in ITEM_WRITE_FIELDS and key != "parent_id"}

        try:
            updated = await self.api.update_thread_item(real_thread_id, real_item_id, payload)
        except API_ERRORS as e:
            logger.error(f"Failed to update thread item {item_id}, keeping the change locally: {e}")
            now = utcnow()
            existing = self._find_item(item_id)
            if existing:
                merged = existing.model_copy(update={**item, "thread_id": real_thread_id, "updated_at": now})
            else:
                merged = ClientThreadItem.model_validate(
                    {"created_at": now, "updated_at": now, **item, "thread_id": real_thread_id}
                )
            self._put_item(merged, item_id)
            self._notify()
            return

        self._put_item(updated, item_id, real_item_id)
        self._notify()

    def schedule_thread_item_update(
        self,
        thread_id: str,
        item: Dict[str, Any],
        delay: float = UPDATE_DEBOUNCE_SECONDS,
    ) -> asyncio.Task:
        """Debounced ``update_thread_item``: only the last update per item within ``delay`` is sent."""
        item_id = item["id"]
        pending = self._pending_updates.pop(item_id, None)
        if pending and not pending.done():
            pending.cancel()

        async def run() -> None:
            await asyncio.sleep(delay)
            await self.update_thread_item(thread_id, item)

        task = asyncio.ensure_future(run())
        self._pending_updates[item_id] = task
        task.add_done_callback(
            lambda done: self._pending_updates.pop(item_id, None) if self._pending_updates.get(item_id) is done else None
        )
        return task

    async def flush_pending_updates(self) -> None:
        tasks = list(self._pending_updates.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def delete_thread_item(self, item_id: str) -> None:
        """Delete an item; a thread left without items is deleted too."""
        thread_id = self.current_thread_id
        if not thread_id:
            return

        real_thread_id = self.thread_ids.resolve(thread_id)
        real_item_id = self.item_ids.resolve(item_id)

        try:
            await self.api.delete_thread_item(real_thread_id, real_item_id)
            self.thread_items = [i for i in self.thread_items if i.id not in (item_id, real_item_id)]
            self.item_ids.clear(real_item_id)

            if not self._items_of(real_thread_id):
                await self.api.delete_thread(real_thread_id)
                self._drop_thread(thread_id, real_thread_id)
                self.navigator.redirect("/chat")
        except API_ERRORS as e:
            logger.error(f"Failed to delete thread item {item_id}: {e}")

        self._notify()

    async def remove_followup_thread_items(self, item_id: str) -> None:
        """Delete every item of the same thread created after ``item_id``."""
        anchor = self._find_item(item_id)
        if not anchor:
            return

        anchor_time = _as_utc(anchor.created_at)
        try:
            await self.api.delete_followup_thread_items(anchor.thread_id, anchor.id)
        except API_ERRORS as e:
            logger.error(f"Failed to remove follow-up thread items: {e}")
            return

        self.thread_items = [
            i for i in self.thread_items
            if i.thread_id != anchor.thread_id or _as_utc(i.created_at) <= anchor_time
        ]
        self._notify()

    def get_previous_thread_items(self, thread_id: Optional[str] = None) -> List[ClientThreadItem]:
        """All items of the thread except the latest."""
        items = self._items_of(thread_id or self.current_thread_id)
        return items[:-1] if len(items) > 1 else []

    def get_current_thread_item(self, thread_id: Optional[str] = None) -> Optional[ClientThreadItem]:
        items = self._items_of(thread_id or self.current_thread_id)
        return items[-1] if items else None

    def get_current_thread(self) -> Optional[ClientThread]:
        if not self.current_thread_id:
            return None
        return next((t for t in self.threads if t.id == self.current_thread_id), None)

    # Certification
    def get_expert_certification_status(self, thread_id: str, now: Optional[datetime] = None) -> str:
        """
        Certification badge of a thread: among threads created yesterday,
        ranked newest first, the first three are "not-certified" and the rest
        "expert-certified". Threads from any other day are "none".
        """
        thread = self._find_thread(thread_id)
        if not thread:
            return "none"

        yesterday = (_as_utc(now or utcnow()) - timedelta(days=1)).date()
        if _as_utc(thread.created_at).date() != yesterday:
            return "none"

        ranked = sorted(
            (t for t in self.threads if _as_utc(t.created_at).date() == yesterday),
            key=lambda t: _as_utc(t.created_at),
            reverse=True,
        )
        rank = next(index for index, t in enumerate(ranked) if t.id == thread.id)
        return "not-certified" if rank < CERTIFICATION_UNCERTIFIED_SLOTS else "expert-certified"

    def is_thread_expert_certified(self, thread_id: str, now: Optional[datetime] = None) -> bool:
        return self.get_expert_certification_status(thread_id, now=now) == "expert-certified"

    # Settings
    def set_domain(self, domain: str) -> None:
        self.domain = domain
        if not self.custom_instructions:
            self.custom_instructions = get_custom_instructions_for_domain(domain)
        self._notify()

    def set_custom_instructions(self, custom_instructions: str) -> None:
        self.config.update(custom_instructions=custom_instructions)
        self.custom_instructions = custom_instructions
        self._notify()

    def set_chat_mode(self, chat_mode: str) -> None:
        self.config.update(chat_mode=chat_mode)
        self.chat_mode = chat_mode
        self._notify()

    def set_use_web_search(self, use_web_search: bool) -> None:
        self.config.update(use_web_search=use_web_search)
        self.use_web_search = use_web_search
        self._notify()

    def set_show_suggestions(self, show_suggestions: bool) -> None:
        self.config.update(show_suggestions=show_suggestions)
        self.show_suggestions = show_suggestions
        self._notify()

    # Generation
    def set_is_generating(self, is_generating: bool) -> None:
        if is_generating:
            self.abort_signal = asyncio.Event()
        self.is_generating = is_generating
        self._notify()

    def stop_generation(self) -> None:
        self.is_generating = False
        if self.abort_signal:
            self.abort_signal.set()
        self._notify()

    async def ask(self, item: ClientThreadItem) -> Optional[ClientThreadItem]:
        """
        Create ``item`` under the current thread and stream its answer,
        applying workflow events to the cached item as they arrive.
        """
        await self.create_thread_item(item)
        item_id = self.item_ids.resolve(item.id)
        if not self._find_item(item_id) or not self.current_thread_id:
            return None

        request = {
            "thread_id": self.thread_ids.resolve(self.current_thread_id),
            "thread_item_id": item_id,
            "message": item.query,
            "mode": self.chat_mode,
            "web_search": self.use_web_search,
            "show_suggestions": self.show_suggestions,
            "domain": self.domain,
            "custom_instructions": self.custom_instructions or None,
        }

        self.set_is_generating(True)
        signal = self.abort_signal
        stream = self.api.stream_chat(request)
        try:
            async for event, data in stream:
                if signal.is_set():
                    self._apply_event(item_id, "status", "ABORTED")
                    break
                self._apply_event(item_id, event, data)
        except API_ERRORS as e:
            logger.error(f"Failed to stream answer for {item_id}: {e}")
            self._apply_event(item_id, "status", "ERROR")
        finally:
            await stream.aclose()
            self.is_generating = False
            self._notify()

        return self._find_item(item_id)

    def _apply_event(self, item_id: str, event: str, data: Any) -> None:
        item = self._find_item(item_id)
        if item is None:
            return

        if event == "answer":
            previous = item.answer or {}
            text = (previous.get("text") or "") + (data.get("text") or "")
            changes = {"answer": {**previous, **data, "text": data.get("full_text") or text}}
        elif event in ("steps", "sources", "suggestions", "status"):
            changes = {event: data}
        elif event == "error":
            changes = {"error": data.get("message"), "status": data.get("status")}
        else:
            return

        self._put_item(item.model_copy(update=changes), item_id)
        self._notify()

    # Optimistic id mappings
    def set_optimistic_id_mapping(self, real_id: str, optimistic_id: str) -> None:
        self.thread_ids.set(real_id, optimistic_id)

    def get_optimistic_id_from_real(self, real_id: str) -> Optional[str]:
        return self.thread_ids.get_optimistic(real_id)

    def get_real_id_from_optimistic(self, optimistic_id: str) -> Optional[str]:
        return self.thread_ids.get_real(optimistic_id)

    def clear_optimistic_id_mapping(self, real_id: str) -> None:
        self.thread_ids.clear(real_id)

    def set_optimistic_thread_item_id_mapping(self, real_item_id: str, optimistic_item_id: str) -> None:
        self.item_ids.set(real_item_id, optimistic_item_id)

    def get_optimistic_thread_item_id_from_real(self, real_item_id: str) -> Optional[str]:
        return self.item_ids.get_optimistic(real_item_id)

    def get_real_thread_item_id_from_optimistic(self, optimistic_item_id: str) -> Optional[str]:
        return self.item_ids.get_real(optimistic_item_id)

    def clear_optimistic_thread_item_id_mapping(self, real_item_id: str) -> None:
        self.item_ids.clear(real_item_id)
