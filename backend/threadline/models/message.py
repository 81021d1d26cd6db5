"""
Message database model.
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Boolean, JSON, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base
from ..utils.ids import new_id


class Message(Base):
    """Chat message with reasoning trace, attachments and tool records."""

    __tablename__ = "messages"

    __table_args__ = (
        Index('ix_messages_thread_position', 'thread_id', 'position'),
    )

    id = Column(String(32), primary_key=True, default=new_id)
    thread_id = Column(String(32), ForeignKey("threads.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False)

    role = Column(String(20), nullable=False)  # "user", "assistant", "system"
    content = Column(Text, nullable=False, default="")
    reasoning = Column(Text, nullable=True)

    attachments = Column(JSON, default=list)
    tool_invocations = Column(JSON, default=list)

    # Generation metadata
    model_id = Column(String(200), nullable=True)
    finish_reason = Column(String(40), nullable=True)
    token_count = Column(Integer, default=0)

    # Stream state
    is_streaming = Column(Boolean, default=False)
    stream_id = Column(String(64), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())

    conversation = relationship("Conversation", back_populates="messages")
