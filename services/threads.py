"""Thread and thread item services for CRUD operations."""
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from uuid import UUID
from sqlalchemy.orm import Session, selectinload
from sqlalchemy import asc, desc, func, or_
import logging

from models.threads import Thread, ThreadItem, Domain, CertifiedStatus
from schemas.threads import ThreadCreate, ThreadUpdate, ThreadFilters, ThreadItemCreate, ThreadItemUpdate, ThreadStats

logger = logging.getLogger(__name__)

ITEM_FIELDS = (
    "query", "status", "error", "image_attachment", "tool_calls", "tool_results",
    "steps", "answer", "sources", "suggestions", "object",
)

ORDER_COLUMNS = {
    "created_at": Thread.created_at,
    "updated_at": Thread.updated_at,
    "pinned_at": Thread.pinned_at,
}


class ThreadService:
    """Service class for thread CRUD operations, always scoped by owner."""

    @staticmethod
    def create_thread(db: Session, user_id: str, thread_data: ThreadCreate) -> Thread:
        """Create a new thread for a user; unknown domains fall back to legal."""
        pinned = bool(thread_data.pinned)
        db_thread = Thread(
            user_id=user_id,
            title=thread_data.title,
            domain=Domain.from_option(thread_data.domain, default=Domain.LEGAL),
            pinned=pinned,
            pinned_at=datetime.now(timezone.utc) if pinned else None,
        )

        db.add(db_thread)
        db.commit()
        db.refresh(db_thread)

        logger.info(f"Thread {db_thread.id} created for user {user_id}")
        return db_thread

    @staticmethod
    def get_thread(db: Session, thread_id: UUID, user_id: Optional[str] = None) -> Optional[Thread]:
        """Retrieve a thread by ID."""
        query = db.query(Thread).filter(Thread.id == thread_id)

        if user_id:
            query = query.filter(Thread.user_id == user_id)

        return query.first()

    @staticmethod
    def get_user_threads(db: Session, user_id: str, filters: Optional[ThreadFilters] = None) -> List[Thread]:
        """Retrieve a user's threads with optional pinned/domain filters and ordering."""
        filters = filters or ThreadFilters()
        query = db.query(Thread).filter(Thread.user_id == user_id)

        if filters.pinned is not None:
            query = query.filter(Thread.pinned == filters.pinned)

        domain = Domain.from_option(filters.domain)
        if domain is not None:
            query = query.filter(Thread.domain == domain)

        column = ORDER_COLUMNS[filters.order_by]
        ordering = desc(column) if filters.order_direction == "desc" else asc(column)

        return query.options(
            selectinload(Thread.thread_items)
        ).order_by(ordering).offset(filters.offset).limit(filters.limit).all()

    @staticmethod
    def update_thread(db: Session, thread_id: UUID, user_id: str, thread_update: ThreadUpdate) -> Optional[Thread]:
        """Update a thread's title, pin state or certification status."""
        thread = ThreadService.get_thread(db, thread_id, user_id)

        if not thread:
            return None

        if thread_update.title is not None:
            thread.title = thread_update.title

        if thread_update.pinned is not None:
            thread.pinned = thread_update.pinned
            thread.pinned_at = datetime.now(timezone.utc) if thread_update.pinned else None

        if thread_update.pinned_at is not None:
            thread.pinned_at = thread_update.pinned_at

        if thread_update.certified_status is not None:
            try:
                thread.certified_status = CertifiedStatus(thread_update.certified_status)
            except ValueError:
                logger.warning(f"Ignoring unknown certified status {thread_update.certified_status!r}")

        db.commit()
        db.refresh(thread)

        return thread

    @staticmethod
    def delete_thread(db: Session, thread_id: UUID, user_id: str) -> bool:
        """Delete a thread and, through the cascade, its items."""
        thread = ThreadService.get_thread(db, thread_id, user_id)

        if not thread:
            return False

        db.delete(thread)
        db.commit()

        logger.info(f"Thread {thread_id} deleted")
        return True

    @staticmethod
    def toggle_thread_pin(db: Session, thread_id: UUID, user_id: str) -> Optional[Thread]:
        """Flip the pinned flag, stamping pinned_at when pinning."""
        thread = ThreadService.get_thread(db, thread_id, user_id)

        if not thread:
            return None

        thread.pinned = not thread.pinned
        thread.pinned_at = datetime.now(timezone.utc) if thread.pinned else None

        db.commit()
        db.refresh(thread)

        return thread

    @staticmethod
    def search_threads(db: Session, user_id: str, query: str, limit: int = 20) -> List[Thread]:
        """Case-insensitive substring search over thread titles and item queries."""
        pattern = f"%{query}%"
        return db.query(Thread).filter(
            Thread.user_id == user_id,
            or_(
                Thread.title.ilike(pattern),
                Thread.thread_items.any(ThreadItem.query.ilike(pattern)),
            )
        ).options(
            selectinload(Thread.thread_items)
        ).order_by(
            desc(Thread.updated_at)
        ).limit(limit).all()

    @staticmethod
    def get_thread_stats(db: Session, user_id: str) -> ThreadStats:
        """Count threads, pinned threads, items and threads started today."""
        today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

        threads = db.query(Thread).filter(Thread.user_id == user_id)
        total_thread_items = db.query(func.count(ThreadItem.id)).join(Thread).filter(
            Thread.user_id == user_id
        ).scalar()

        return ThreadStats(
            total_threads=threads.count(),
            pinned_threads=threads.filter(Thread.pinned.is_(True)).count(),
            total_thread_items=total_thread_items or 0,
            threads_today=threads.filter(Thread.created_at >= today).count(),
        )

    @staticmethod
    def clear_all_threads(db: Session, user_id: str) -> int:
        """Delete every thread the user owns; returns how many were removed."""
        threads = db.query(Thread).filter(Thread.user_id == user_id).all()
        for thread in threads:
            db.delete(thread)
        db.commit()

        logger.info(f"Cleared {len(threads)} threads for user {user_id}")
        return len(threads)


class ThreadItemService:
    """Service class for thread item CRUD operations."""

    @staticmethod
    def _touch_thread(db: Session, thread_id: UUID) -> None:
        """Item activity counts as activity on the parent thread."""
        thread = db.query(Thread).filter(Thread.id == thread_id).first()
        if thread:
            thread.updated_at = datetime.now(timezone.utc)

    @staticmethod
    def create_thread_item(db: Session, thread_id: UUID, item_data: ThreadItemCreate) -> ThreadItem:
        """Create a new item in a thread."""
        db_item = ThreadItem(
            thread_id=thread_id,
            parent_id=item_data.parent_id,
            mode=item_data.mode,
            item_metadata=item_data.metadata,
            **{field: getattr(item_data, field) for field in ITEM_FIELDS if field != "suggestions"},
            suggestions=item_data.suggestions or [],
        )

        db.add(db_item)
        ThreadItemService._touch_thread(db, thread_id)
        db.commit()
        db.refresh(db_item)

        return db_item

    @staticmethod
    def get_thread_item(db: Session, thread_id: UUID, item_id: UUID) -> Optional[ThreadItem]:
        return db.query(ThreadItem).filter(
            ThreadItem.id == item_id,
            ThreadItem.thread_id == thread_id
        ).first()

    @staticmethod
    def get_thread_items(db: Session, thread_id: UUID) -> List[ThreadItem]:
        """Items of a thread in creation order."""
        return db.query(ThreadItem).filter(
            ThreadItem.thread_id == thread_id
        ).order_by(
            asc(ThreadItem.created_at)
        ).all()

    @staticmethod
    def update_thread_item(db: Session, item: ThreadItem, item_update: ThreadItemUpdate) -> ThreadItem:
        """Apply the fields explicitly set in a partial update."""
        changes: Dict[str, Any] = item_update.model_dump(exclude_unset=True)

        for field in ITEM_FIELDS:
            if field in changes:
                setattr(item, field, changes[field])

        if "metadata" in changes:
            item.item_metadata = changes["metadata"]

        ThreadItemService._touch_thread(db, item.thread_id)
        db.commit()
        db.refresh(item)

        return item

    @staticmethod
    def delete_thread_item(db: Session, item: ThreadItem) -> None:
        db.delete(item)
        db.commit()

    @staticmethod
    def delete_followup_thread_items(db: Session, item: ThreadItem) -> int:
        """Delete every item of the same thread created after the given one."""
        followups = db.query(ThreadItem).filter(
            ThreadItem.thread_id == item.thread_id,
            ThreadItem.created_at > item.created_at
        ).all()

        for followup in followups:
            db.delete(followup)
        db.commit()

        return len(followups)

    @staticmethod
    def conversation_history(db: Session, thread_id: UUID, before_item: Optional[ThreadItem] = None) -> List[Dict[str, str]]:
        """Earlier exchanges of a thread as user/assistant messages."""
        query = db.query(ThreadItem).filter(ThreadItem.thread_id == thread_id)
        if before_item is not None:
            query = query.filter(ThreadItem.created_at < before_item.created_at)

        messages = []
        for item in query.order_by(asc(ThreadItem.created_at)).all():
            messages.append({"role": "user", "content": item.query})
            answer = item.answer or {}
            text = answer.get("full_text") or answer.get("text")
            if text:
                messages.append({"role": "assistant", "content": text})
        return messages
