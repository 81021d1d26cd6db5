"""
Identity and quota schemas.
"""

from pydantic import BaseModel, ConfigDict
from typing import Optional
from datetime import datetime
from enum import Enum


class IdentityKind(str, Enum):
    ANONYMOUS = "anonymous"
    USER = "user"


class Identity(BaseModel):
    """Who is acting: an authenticated account or an anonymous session."""
    model_config = ConfigDict(frozen=True)

    kind: IdentityKind
    subject: str
    plan: str = "free"

    @property
    def is_anonymous(self) -> bool:
        return self.kind == IdentityKind.ANONYMOUS

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.subject}"

    @classmethod
    def anonymous(cls, session_token: str) -> "Identity":
        return cls(kind=IdentityKind.ANONYMOUS, subject=session_token, plan="anonymous")

    @classmethod
    def user(cls, user_id: str, plan: str = "free") -> "Identity":
        return cls(kind=IdentityKind.USER, subject=user_id, plan=plan)


class QuotaUsage(BaseModel):
    """Snapshot of a quota record."""
    used: int
    limit: Optional[int] = None  # None means unlimited
    window_start: datetime
    reset_at: datetime

    @property
    def unlimited(self) -> bool:
        return self.limit is None

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(0, self.limit - self.used)

    @property
    def can_send(self) -> bool:
        return self.limit is None or self.used < self.limit


class QuotaResponse(BaseModel):
    used: int
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_at: datetime
    can_send: bool
