"""Pydantic schemas for thread-related requests and responses."""
from datetime import datetime
from typing import Optional, Dict, Any, List, Literal
from pydantic import BaseModel, Field, ConfigDict
from uuid import UUID


class ThreadCreate(BaseModel):
    """Schema for creating a thread."""
    title: str = Field(..., min_length=1, max_length=255)
    domain: Optional[str] = None
    pinned: Optional[bool] = False


class ThreadUpdate(BaseModel):
    """Schema for updating a thread."""
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    pinned: Optional[bool] = None
    pinned_at: Optional[datetime] = None
    certified_status: Optional[str] = None


class ThreadFilters(BaseModel):
    """Filters accepted by the thread listing."""
    pinned: Optional[bool] = None
    domain: Optional[str] = None
    limit: int = Field(default=50, ge=1, le=200)
    offset: int = Field(default=0, ge=0)
    order_by: Literal["created_at", "updated_at", "pinned_at"] = "created_at"
    order_direction: Literal["asc", "desc"] = "desc"


class ThreadItemBase(BaseModel):
    """Fields shared by thread item create and update requests."""
    status: Optional[str] = None
    error: Optional[str] = None
    image_attachment: Optional[str] = None
    tool_calls: Optional[Dict[str, Any]] = None
    tool_results: Optional[Dict[str, Any]] = None
    steps: Optional[Dict[str, Any]] = None
    answer: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    sources: Optional[List[Any]] = None
    suggestions: Optional[List[str]] = None
    object: Optional[Dict[str, Any]] = None


class ThreadItemCreate(ThreadItemBase):
    """Schema for creating a thread item."""
    query: str = Field(..., min_length=1)
    mode: str = Field(..., min_length=1)
    parent_id: Optional[str] = None


class ThreadItemUpdate(ThreadItemBase):
    """Schema for a partial thread item update; unset fields are left alone."""
    query: Optional[str] = None


class ThreadItemResponse(ThreadItemBase):
    """Schema for thread item responses."""
    id: UUID
    thread_id: UUID
    parent_id: Optional[str] = None
    query: str
    mode: str
    suggestions: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ThreadResponse(BaseModel):
    """Schema for thread responses."""
    id: UUID
    user_id: str
    title: str
    domain: str
    pinned: bool
    pinned_at: Optional[datetime] = None
    certified_status: str
    created_at: datetime
    updated_at: datetime
    thread_items: List[ThreadItemResponse] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class ThreadStats(BaseModel):
    """Per-user thread counters."""
    total_threads: int
    pinned_threads: int
    total_thread_items: int
    threads_today: int
