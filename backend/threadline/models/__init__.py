"""
Database models package.
"""

from .conversation import Conversation
from .message import Message
from .stream import StreamRecord
from .quota import QuotaRecord

__all__ = ["Conversation", "Message", "StreamRecord", "QuotaRecord"]
