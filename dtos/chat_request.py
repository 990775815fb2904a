from pydantic import BaseModel, Field
from typing import Optional, Dict


class ChatRequest(BaseModel):
    thread_id: str
    message: str = Field(..., min_length=1, description="The user's question")
    thread_item_id: Optional[str] = Field(default=None, description="Existing item to answer; created when omitted")
    parent_id: Optional[str] = None
    mode: str = Field(default="gpt-4o-mini", description="Chat mode selecting the model")
    web_search: bool = Field(default=False, description="Answer from web search results")
    show_suggestions: bool = Field(default=True, description="Generate follow-up suggestions")
    domain: Optional[str] = Field(default=None, description="Domain override; defaults to the thread's domain")
    custom_instructions: Optional[str] = None
    gl: Optional[Dict[str, str]] = Field(default=None, description="Location hint with city and country")
