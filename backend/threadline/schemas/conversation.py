"""
Conversation-related Pydantic schemas.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List
from datetime import datetime

from .message import ChatMessage


class ThreadResponse(BaseModel):
    """Thread metadata."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    model_id: Optional[str] = None
    is_public: bool = False
    active_stream_id: Optional[str] = None
    message_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ThinkingDisplay(BaseModel):
    """How the reasoning panel of the streaming message should render."""
    visible: bool = False
    force_expanded: bool = False
    force_collapsed: bool = False


class ThreadView(BaseModel):
    """Render-ready state of a thread: reconciled messages plus live phase."""
    thread_id: str
    messages: List[ChatMessage]
    phase: str
    status_text: Optional[str] = None
    is_loading: bool = False
    thinking: ThinkingDisplay = ThinkingDisplay()
    stream_id: Optional[str] = None
    cursor: int = 0


class ThreadUpdate(BaseModel):
    """Rename a thread."""
    title: str = Field(..., min_length=1, max_length=200)
