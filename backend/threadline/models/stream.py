"""
Stream tracking model for resumable generations.
"""

from sqlalchemy import Column, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base


class StreamRecord(Base):
    """One generation attempt as seen by the durable store."""

    __tablename__ = "streams"

    stream_id = Column(String(64), primary_key=True)
    thread_id = Column(String(32), ForeignKey("threads.id", ondelete="CASCADE"), nullable=False, index=True)

    status = Column(String(20), nullable=False, default="active")  # active, completed, error, cancelled

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    conversation = relationship("Conversation", back_populates="streams")
