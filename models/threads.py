"""Thread and thread item models for conversation management."""
from sqlalchemy import Column, String, DateTime, Text, Boolean, ForeignKey, JSON, Uuid, Enum
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4
import enum

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Domain(enum.Enum):
    """Subject-matter domain a thread is restricted to."""
    LEGAL = "legal"
    CIVIL_ENGINEERING = "civil_engineering"
    REAL_ESTATE = "real_estate"

    @classmethod
    def from_option(cls, value: Optional[str], default: Optional["Domain"] = None) -> Optional["Domain"]:
        """Convert a domain option ("legal") or stored name ("LEGAL") to the enum."""
        if not value:
            return default
        for member in cls:
            if value == member.value or value == member.name:
                return member
        return default

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


class CertifiedStatus(enum.Enum):
    """Expert review status of a thread."""
    PENDING = "PENDING"
    CERTIFIED = "CERTIFIED"
    NOT_CERTIFIED = "NOT_CERTIFIED"


class Thread(Base):
    """
    SQLAlchemy model for conversation threads.

    A thread belongs to exactly one user and owns its items; deleting the
    thread deletes the items with it.
    """
    __tablename__ = "threads"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False, default="New Chat")
    pinned = Column(Boolean, nullable=False, default=False)
    pinned_at = Column(DateTime(timezone=True), nullable=True)
    domain = Column(Enum(Domain), nullable=False, default=Domain.LEGAL)
    certified_status = Column(Enum(CertifiedStatus), nullable=False, default=CertifiedStatus.PENDING)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    thread_items = relationship(
        "ThreadItem",
        back_populates="thread",
        cascade="all, delete-orphan",
        order_by="ThreadItem.created_at",
    )


class ThreadItem(Base):
    """
    SQLAlchemy model for a single query/response exchange in a thread.

    Tool calls, steps, answer and the other workflow outputs are stored as
    free-form JSON.
    """
    __tablename__ = "thread_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4, index=True)
    thread_id = Column(Uuid(as_uuid=True), ForeignKey("threads.id", ondelete="CASCADE"), nullable=False, index=True)
    parent_id = Column(String, nullable=True)
    query = Column(Text, nullable=False)
    mode = Column(String, nullable=False)
    status = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    image_attachment = Column(Text, nullable=True)
    tool_calls = Column(JSON, nullable=True)
    tool_results = Column(JSON, nullable=True)
    steps = Column(JSON, nullable=True)
    answer = Column(JSON, nullable=True)
    item_metadata = Column(JSON, nullable=True)
    sources = Column(JSON, nullable=True)
    suggestions = Column(JSON, nullable=False, default=list)
    object = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    thread = relationship("Thread", back_populates="thread_items")
