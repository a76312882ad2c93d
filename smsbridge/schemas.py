"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the notify trigger
- Response models for API responses
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

class NotifyRecord(BaseModel):
    """The inserted message row carried by a notify trigger."""
    id: str = Field(..., min_length=1, description="Message identifier")
    conversation_id: str = Field(..., min_length=1)
    sender_id: str = Field(..., min_length=1)
    content_raw: str = Field(..., description="Message text as typed")
    created_at: Optional[str] = Field(None, description="Insert timestamp")


class NotifyTrigger(BaseModel):
    """
    Database change event posted when a message is inserted.

    Only type == "INSERT" on table == "messages" is processed.
    """
    type: str
    table: str
    record: Optional[NotifyRecord] = None

    def is_message_insert(self) -> bool:
        return self.type == "INSERT" and self.table == "messages" and self.record is not None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "INSERT",
                    "table": "messages",
                    "record": {
                        "id": "7d0c6a9e-2f4b-4f0e-9d43-1a0a4c1f2b11",
                        "conversation_id": "00000000-0000-0000-0000-000000000002",
                        "sender_id": "5b1e2c3d-0000-4000-8000-000000000abc",
                        "content_raw": "Pushed the fix, can you review?",
                        "created_at": "2025-01-15T10:00:00Z"
                    }
                }
            ]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class RecipientOutcome(BaseModel):
    user_id: str
    status: Literal["sent", "skipped", "failed"]
    reason: Optional[str] = None


class NotifyResponse(BaseModel):
    success: bool = True
    results: list[RecipientOutcome] = Field(default_factory=list)


class NotifySkippedResponse(BaseModel):
    skipped: bool = True
    reason: Optional[str] = None


class MessageView(BaseModel):
    """
    A message as a particular viewer sees it. `content` is the single string
    chosen by the conversation's visibility mode.
    """
    id: str
    conversation_id: str
    sender_id: str
    content: str
    is_from_agent: bool
    source: str
    created_at: str


class MessagesListResponse(BaseModel):
    """
    Response model for GET /conversations/{id}/messages with pagination.
    """
    conversation_id: str
    mode: str
    data: list[MessageView] = Field(default_factory=list)
    total: int = Field(..., ge=0, description="Total messages in the conversation")
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
