"""
Quota gate: admission control for new generations.

Anonymous sessions get a small daily allowance; accounts get a monthly
allowance set by their plan (or none at all). Running out is an expected
state, so the gate answers with a boolean instead of raising.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Mapping, Optional, Protocol, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..config import settings
from ..models.quota import QuotaRecord
from ..schemas.quota import Identity, QuotaUsage
from ..utils.locks import KeyedLocks


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuotaPolicy:
    """Window length and ceiling per identity class."""

    def __init__(
        self,
        anonymous_daily_limit: int = None,
        plan_monthly_limits: Optional[Mapping[str, Optional[int]]] = None,
    ):
        self.anonymous_daily_limit = (
            settings.ANONYMOUS_DAILY_LIMIT if anonymous_daily_limit is None else anonymous_daily_limit
        )
        self.plan_monthly_limits = dict(
            settings.PLAN_MONTHLY_LIMITS if plan_monthly_limits is None else plan_monthly_limits
        )

    def ceiling(self, identity: Identity) -> Optional[int]:
        if identity.is_anonymous:
            return self.anonymous_daily_limit
        return self.plan_monthly_limits.get(identity.plan, self.plan_monthly_limits.get("free"))

    def window(self, identity: Identity, now: datetime) -> Tuple[datetime, datetime]:
        """Start and end of the window containing ``now``."""
        if identity.is_anonymous:
            start = now.replace(hour=0, minute=0, second=0, microsecond=0)
            return start, start + timedelta(days=1)
        start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        return start, end


class QuotaStore(Protocol):
    async def get_usage(self, identity: Identity) -> QuotaUsage:
        ...

    async def consume_one(self, identity: Identity) -> bool:
        ...


class InMemoryQuotaStore:
    """Process-local store; fine for a single instance or tests."""

    def __init__(self, policy: Optional[QuotaPolicy] = None, clock: Clock = utcnow):
        self.policy = policy or QuotaPolicy()
        self._clock = clock
        self._records: Dict[str, Dict] = {}
        self._locks = KeyedLocks()

    def _current(self, identity: Identity) -> Dict:
        now = self._clock()
        start, _ = self.policy.window(identity, now)
        record = self._records.get(identity.key)
        if record is None or record["window_start"] < start:
            record = {"used": 0, "window_start": start, "ceiling": self.policy.ceiling(identity)}
            self._records[identity.key] = record
        return record

    def _usage(self, identity: Identity, record: Dict) -> QuotaUsage:
        _, end = self.policy.window(identity, record["window_start"])
        return QuotaUsage(
            used=record["used"],
            limit=record["ceiling"],
            window_start=record["window_start"],
            reset_at=end,
        )

    async def get_usage(self, identity: Identity) -> QuotaUsage:
        return self._usage(identity, self._current(identity))

    async def consume_one(self, identity: Identity) -> bool:
        async with self._locks.hold(identity.key):
            record = self._current(identity)
            ceiling = record["ceiling"]
            if ceiling is not None and record["used"] >= ceiling:
                return False
            record["used"] += 1
            return True


class SqlQuotaStore:
    """Quota records in the database.

    The increment is a conditional UPDATE (compare-and-swap on the counter and
    window), so it stays atomic across processes sharing the database; the
    per-identity lock keeps writers in this process from contending.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        policy: Optional[QuotaPolicy] = None,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self.policy = policy or QuotaPolicy()
        self._clock = clock
        self._locks = KeyedLocks()

    async def _ensure_window(self, identity: Identity) -> QuotaUsage:
        now = self._clock()
        start, end = self.policy.window(identity, now)
        ceiling = self.policy.ceiling(identity)

        async with self._session_factory() as db:
            result = await db.execute(select(QuotaRecord).filter(QuotaRecord.identity_key == identity.key))
            record = result.scalar_one_or_none()

            if record is None:
                db.add(QuotaRecord(identity_key=identity.key, used=0, window_start=start, ceiling=ceiling))
                try:
                    await db.commit()
                except IntegrityError:
                    # another writer created it first
                    await db.rollback()
                return QuotaUsage(used=0, limit=ceiling, window_start=start, reset_at=end)

            if _aware(record.window_start) < start:
                await db.execute(
                    update(QuotaRecord)
                    .where(
                        QuotaRecord.identity_key == identity.key,
                        QuotaRecord.window_start == record.window_start,
                    )
                    .values(used=0, window_start=start, ceiling=ceiling)
                )
                await db.commit()
                return QuotaUsage(used=0, limit=ceiling, window_start=start, reset_at=end)

            if record.ceiling != ceiling:
                # plan changed mid-window
                record.ceiling = ceiling
                await db.commit()
            return QuotaUsage(used=record.used, limit=ceiling, window_start=start, reset_at=end)

    async def get_usage(self, identity: Identity) -> QuotaUsage:
        return await self._ensure_window(identity)

    async def consume_one(self, identity: Identity) -> bool:
        async with self._locks.hold(identity.key):
            usage = await self._ensure_window(identity)
            async with self._session_factory() as db:
                statement = (
                    update(QuotaRecord)
                    .where(
                        QuotaRecord.identity_key == identity.key,
                        QuotaRecord.used == usage.used,
                        (QuotaRecord.ceiling.is_(None)) | (QuotaRecord.used < QuotaRecord.ceiling),
                    )
                    .values(used=QuotaRecord.used + 1)
                )
                result = await db.execute(statement)
                await db.commit()
                return result.rowcount == 1


class QuotaGate:
    """Admission check in front of every new generation."""

    def __init__(self, store: QuotaStore, fail_open: Optional[bool] = None):
        self._store = store
        self._fail_open = settings.QUOTA_FAIL_OPEN if fail_open is None else fail_open

    async def usage(self, identity: Identity) -> QuotaUsage:
        return await self._store.get_usage(identity)

    async def can_send(self, identity: Identity) -> bool:
        try:
            return (await self._store.get_usage(identity)).can_send
        except SQLAlchemyError as exc:
            logger.warning("Quota lookup failed for %s: %s", identity.key, exc)
            return self._fail_open

    async def try_consume(self, identity: Identity) -> bool:
        """Take one unit of quota. False means the identity is out of quota."""
        try:
            accepted = await self._store.consume_one(identity)
        except SQLAlchemyError as exc:
            logger.warning("Quota consume failed for %s, fail_open=%s: %s", identity.key, self._fail_open, exc)
            return self._fail_open
        if not accepted:
            logger.info("Quota exhausted for %s", identity.key)
        return accepted


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
