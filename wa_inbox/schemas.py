"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for dashboard commands (send, read, mark-unread, delete)
- Response models for API responses

Inbound webhooks and status callbacks are provider forms and are parsed
field by field (see inbound.py and main.py) rather than through a model.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendRequest(BaseModel):
    """
    Outbound message from the dashboard.

    - to: recipient number in any format the normalizer accepts
    - body: message text
    - conversationId: reuse an existing conversation instead of resolving by number
    """
    to: Optional[str] = Field(None, description="Recipient phone number")
    body: Optional[str] = Field(None, description="Message text")
    conversationId: Optional[str] = Field(None, description="Existing conversation id")

    model_config = ConfigDict(
        extra="ignore",
        json_schema_extra={
            "examples": [
                {"to": "3331234567", "body": "ok", "conversationId": None}
            ]
        },
    )


class ConversationRequest(BaseModel):
    """Body of /read and /delete-chat."""
    conversationId: Optional[str] = Field(None, description="Conversation id")

    model_config = ConfigDict(extra="ignore")


class MarkUnreadRequest(ConversationRequest):
    """Body of /mark-unread. A missing or non-numeric count means 1."""
    unreadCount: Optional[int] = Field(None, description="Unread count to set (minimum 1)")

    @field_validator("unreadCount", mode="before")
    @classmethod
    def lenient_count(cls, v: Any) -> Optional[int]:
        if v is None or isinstance(v, bool):
            return None
        try:
            return int(float(v))
        except (TypeError, ValueError, OverflowError):
            return None


# =============================================================================
# Pydantic Response Models
# =============================================================================

class StatusResponse(BaseModel):
    """Response model for acknowledged callbacks and commands."""
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    error: str = Field(..., description="Error description")


class SendResponse(BaseModel):
    conversationId: str
    messageId: str
    sid: str
    status: str
    phone: str


class ConversationSummary(BaseModel):
    """A conversation rollup as listed in the inbox."""
    id: str
    phone: str = ""
    lastMessageText: str = ""
    lastMessageAt: Optional[int] = None
    unreadCount: int = 0

    model_config = ConfigDict(extra="allow")


class MessageItem(BaseModel):
    """One message of a conversation."""
    id: str
    text: str = ""
    direction: str
    timestamp: int
    media: Optional[List[Dict[str, Any]]] = None
    sid: Optional[str] = None
    status: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class StatusBySidResponse(BaseModel):
    conversationId: Optional[str] = None
    messageId: Optional[str] = None
    status: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
