"""Thread and thread item records as held by the client store."""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class ClientThreadItem(BaseModel):
    """A question/answer turn; ``id`` may be optimistic until the server confirms it."""
    model_config = ConfigDict(extra="ignore")

    id: str
    thread_id: str
    parent_id: Optional[str] = None
    query: str = ""
    mode: str = ""
    status: Optional[str] = None
    error: Optional[str] = None
    image_attachment: Optional[str] = None
    tool_calls: Optional[Dict[str, Any]] = None
    tool_results: Optional[Dict[str, Any]] = None
    steps: Optional[Dict[str, Any]] = None
    answer: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    sources: Optional[List[Any]] = None
    suggestions: List[str] = Field(default_factory=list)
    object: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime


class ClientThread(BaseModel):
    """A conversation thread; ``id`` may be optimistic until the server confirms it."""
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: Optional[str] = None
    title: str
    domain: str = "legal"
    pinned: bool = False
    pinned_at: Optional[datetime] = None
    certified_status: str = "PENDING"
    created_at: datetime
    updated_at: datetime
    thread_items: List[ClientThreadItem] = Field(default_factory=list)
