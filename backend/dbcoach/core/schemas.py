"""
DB Coach - Pydantic Schemas
===========================

Shared request and response schemas for API validation.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from dbcoach.core.models import DatabaseType, SessionStatus


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class MessageResponse(BaseSchema):
    """Generic message response."""

    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    generation_backend: str
    active_sessions: int


# ==========================================================================
# Conversations
# ==========================================================================

class ConversationSummary(BaseSchema):
    """Saved conversation without its content."""

    id: str
    title: str
    prompt: str
    database_type: DatabaseType
    status: SessionStatus
    duration_seconds: Optional[float] = None
    total_characters: int
    total_insights: int
    created_at: datetime
    completed_at: Optional[datetime] = None


class ConversationDetail(ConversationSummary):
    """Saved conversation with content, insights and task snapshots."""

    generated_content: Dict[str, str]
    insights: List[Dict[str, Any]]
    tasks: List[Dict[str, Any]]
    reasoning_steps: Optional[List[Dict[str, Any]]] = None
    fallback_tiers: Optional[Dict[str, str]] = None
    updated_at: datetime
