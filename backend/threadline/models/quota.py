"""
Quota record model.
"""

from sqlalchemy import Column, Integer, String, DateTime

from ..database import Base


class QuotaRecord(Base):
    """Per-identity message counter for the current window."""

    __tablename__ = "quota_records"

    identity_key = Column(String(250), primary_key=True)
    used = Column(Integer, nullable=False, default=0)
    window_start = Column(DateTime(timezone=True), nullable=False)
    ceiling = Column(Integer, nullable=True)  # null means unlimited
