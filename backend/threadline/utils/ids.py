"""
Identifier helpers.
"""

import uuid

PROVISIONAL_PREFIX = "local-"


def new_id() -> str:
    """Permanent id for a persisted row."""
    return uuid.uuid4().hex


def provisional_id() -> str:
    """Id for a message that exists only in memory so far."""
    return PROVISIONAL_PREFIX + uuid.uuid4().hex


def new_stream_id() -> str:
    return "strm_" + uuid.uuid4().hex


def is_provisional(message_id: str) -> bool:
    return message_id.startswith(PROVISIONAL_PREFIX)
