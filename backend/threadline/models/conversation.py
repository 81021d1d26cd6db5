"""
Conversation (thread) database model.
"""

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base
from ..utils.ids import new_id


class Conversation(Base):
    """A chat thread owned by an account or an anonymous session."""

    __tablename__ = "threads"

    __table_args__ = (
        Index('ix_threads_owner_updated', 'owner_kind', 'owner_id', 'updated_at'),
    )

    id = Column(String(32), primary_key=True, default=new_id)

    # Owner: authenticated account id or anonymous session token
    owner_kind = Column(String(20), nullable=False)  # "user", "anonymous"
    owner_id = Column(String(200), nullable=False, index=True)

    # Conversation metadata
    title = Column(String(200), default="New Chat")
    model_id = Column(String(200), nullable=True)
    is_public = Column(Boolean, default=False)

    # Resume token of the generation currently in flight, if any
    active_stream_id = Column(String(64), nullable=True)

    message_count = Column(Integer, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())

    messages = relationship("Message", back_populates="conversation", cascade="all, delete-orphan", order_by="Message.position")
    streams = relationship("StreamRecord", back_populates="conversation", cascade="all, delete-orphan")
