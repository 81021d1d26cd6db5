"""
Services package.
"""

from .chat_controller import ChatController
from .llm_service import FETCH_PAGE_TOOL, LLMService, ToolSpec
from .persistence import PersistenceBridge
from .quota_service import InMemoryQuotaStore, QuotaGate, QuotaPolicy, SqlQuotaStore
from .stream_session import SessionManager

__all__ = [
    "ChatController",
    "FETCH_PAGE_TOOL",
    "LLMService",
    "ToolSpec",
    "PersistenceBridge",
    "InMemoryQuotaStore",
    "QuotaGate",
    "QuotaPolicy",
    "SqlQuotaStore",
    "SessionManager",
]
