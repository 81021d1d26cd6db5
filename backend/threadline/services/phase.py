"""
Phase detection for an in-flight generation.

The phase is the single source of truth for loading indicators. Status text,
the thinking panel and the "is loading" flag are projections of it.
"""

from enum import Enum
from typing import NamedTuple, Optional

from ..schemas.conversation import ThinkingDisplay


class Phase(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    THINKING = "thinking"
    BROWSING = "browsing"
    RESPONDING = "responding"
    DONE = "done"
    ERROR = "error"


class PhaseInputs(NamedTuple):
    has_submitted: bool = False
    has_received_any_token: bool = False
    has_reasoning_content: bool = False
    has_active_tool_call: bool = False
    user_requested_thinking_model: bool = False
    user_requested_browsing: bool = False
    content_so_far: str = ""
    completed: bool = False
    errored: bool = False


def detect_phase(inputs: PhaseInputs) -> Phase:
    """Classify a generation. First matching rule wins."""
    if inputs.errored:
        return Phase.ERROR
    if inputs.completed:
        return Phase.DONE
    if not inputs.has_submitted:
        return Phase.IDLE

    has_content = bool(inputs.content_so_far.strip())

    if (
        not has_content
        and not inputs.has_reasoning_content
        and inputs.user_requested_browsing
        and inputs.has_active_tool_call
    ):
        return Phase.BROWSING

    if not has_content and (inputs.has_reasoning_content or inputs.user_requested_thinking_model):
        return Phase.THINKING

    if has_content:
        return Phase.RESPONDING

    return Phase.QUEUED


_STATUS_TEXT = {
    Phase.QUEUED: "Generating...",
    Phase.THINKING: "Thinking...",
    Phase.BROWSING: "Searching...",
    Phase.RESPONDING: "Generating...",
}


def is_loading(phase: Phase) -> bool:
    return phase in _STATUS_TEXT


def status_text(phase: Phase) -> Optional[str]:
    return _STATUS_TEXT.get(phase)


def thinking_display(phase: Phase, has_reasoning_content: bool) -> ThinkingDisplay:
    """Reasoning panel state for the streaming message.

    The panel shows as soon as thinking starts (even before reasoning tokens
    arrive), stays expanded while thinking and collapses once the answer
    starts streaming.
    """
    visible = has_reasoning_content or phase == Phase.THINKING
    return ThinkingDisplay(
        visible=visible,
        force_expanded=phase == Phase.THINKING,
        force_collapsed=phase == Phase.RESPONDING and has_reasoning_content,
    )
