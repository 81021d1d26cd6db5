"""
Message-related Pydantic schemas.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Any, Literal
from enum import Enum


Role = Literal["user", "assistant", "system"]
ToolState = Literal["partial-call", "call", "result"]


class Attachment(BaseModel):
    """Reference to an uploaded file; storage itself lives elsewhere."""
    id: str
    name: str = "Attachment"
    content_type: str = "application/octet-stream"
    url: str
    size: int = 0


class ToolInvocation(BaseModel):
    """One tool call made by the model during a generation."""
    tool_call_id: str
    tool_name: str
    args: Any = None
    result: Any = None
    state: ToolState = "partial-call"

    @property
    def is_open(self) -> bool:
        return self.state in ("partial-call", "call")


class ChatMessage(BaseModel):
    """A message as rendered and persisted.

    Equality is structural, which the reconciler relies on to hand back the
    same list object when nothing visible changed.
    """
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    role: Role
    content: str = ""
    reasoning: Optional[str] = None
    attachments: List[Attachment] = []
    tool_invocations: List[ToolInvocation] = []
    is_streaming: bool = False
    stream_id: Optional[str] = None
    model_id: Optional[str] = None
    finish_reason: Optional[str] = None


class DeltaType(str, Enum):
    TEXT = "text"
    REASONING = "reasoning"
    TOOL_CALL = "tool-call"
    TOOL_RESULT = "tool-result"
    DONE = "done"
    ERROR = "error"


class StreamDelta(BaseModel):
    """One incremental unit of model output.

    ``seq`` is assigned by the stream session when the delta is applied;
    providers leave it at zero.
    """
    type: DeltaType
    seq: int = 0
    content: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    args: Any = None
    result: Any = None
    state: Optional[ToolState] = None
    finish_reason: Optional[str] = None
    token_count: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class GenerationOptions(BaseModel):
    """Per-request generation settings, passed explicitly down the call chain."""
    model_id: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    system_prompt: Optional[str] = None
    enable_thinking: bool = False
    enable_browsing: bool = False


class ChatRequest(BaseModel):
    """Schema for sending a chat message."""
    thread_id: Optional[str] = None  # If None, create new thread
    content: str = Field(..., min_length=1)
    attachments: List[Attachment] = []
    options: GenerationOptions = GenerationOptions()


class RetryRequest(BaseModel):
    options: GenerationOptions = GenerationOptions()


class StopRequest(BaseModel):
    persist_partial: bool = True


class StreamChunk(BaseModel):
    """Schema for one server-sent event frame."""
    type: str  # "session", any DeltaType value, "final"
    seq: Optional[int] = None
    phase: Optional[str] = None
    delta: Optional[StreamDelta] = None
    thread_id: Optional[str] = None
    stream_id: Optional[str] = None
    message_id: Optional[str] = None
    message: Optional[ChatMessage] = None
    unsaved_content: Optional[str] = None
    error: Optional[str] = None

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json(exclude_none=True)}\n\n"


class CancelResponse(BaseModel):
    saved: bool
    already_finished: bool = False
    message: Optional[ChatMessage] = None
    unsaved_content: Optional[str] = None
