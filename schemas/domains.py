"""Schemas for domain listing and question validation."""
from typing import Optional, List
from pydantic import BaseModel, Field


class DomainInfo(BaseModel):
    """Public view of a domain configuration."""
    domain: str
    name: str
    description: str
    restrictive: bool
    keywords: List[str]


class DomainValidationRequest(BaseModel):
    question: str = Field(..., min_length=1, max_length=10000)
    domain: str


class DomainValidationResponse(BaseModel):
    is_valid: bool
    confidence: float
    suggestion: Optional[str] = None
