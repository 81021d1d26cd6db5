"""
Persistence bridge between the chat engine and the durable store.

Every call is scoped to an identity: a thread owned by someone else behaves
exactly like a thread that does not exist.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..errors import MessageNotFound, PersistenceWriteFailed, ThreadNotFound
from ..models.conversation import Conversation
from ..models.message import Message
from ..models.stream import StreamRecord
from ..schemas.message import Attachment, ChatMessage, ToolInvocation
from ..schemas.quota import Identity
from ..utils.ids import is_provisional


logger = logging.getLogger(__name__)

T = TypeVar("T")

_UPDATABLE_FIELDS = frozenset({
    "content", "reasoning", "tool_invocations", "attachments", "finish_reason",
    "token_count", "is_streaming", "model_id",
})


def to_chat_message(row: Message) -> ChatMessage:
    return ChatMessage(
        id=row.id,
        role=row.role,
        content=row.content or "",
        reasoning=row.reasoning,
        attachments=[Attachment.model_validate(a) for a in (row.attachments or [])],
        tool_invocations=[ToolInvocation.model_validate(t) for t in (row.tool_invocations or [])],
        is_streaming=bool(row.is_streaming),
        stream_id=row.stream_id,
        model_id=row.model_id,
        finish_reason=row.finish_reason,
    )


def derive_title(text: str, max_length: int = 50) -> str:
    """Title for a new thread from its first user message."""
    cleaned = re.sub(r"```[\s\S]*?```", "", text or "")
    cleaned = re.sub(r"`([^`]*)`", r"\1", cleaned)
    cleaned = re.sub(r"\*\*(.*?)\*\*", r"\1", cleaned)
    cleaned = re.sub(r"\*(.*?)\*", r"\1", cleaned)
    cleaned = re.sub(r"#{1,6}\s+", "", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()

    words = cleaned.split()
    if len(words) <= 1:
        return "New Chat"

    # Use first 5 words or first max_length chars
    if len(words) > 5:
        title = " ".join(words[:5]) + "..."
    else:
        title = cleaned
    if len(title) > max_length:
        title = title[:max_length].rstrip() + "..."
    return title


async def with_write_retry(
    operation: Callable[..., Awaitable[T]],
    *args: Any,
    backoff: Optional[float] = None,
    **kwargs: Any,
) -> T:
    """Run a write, retrying once after a backoff.

    Raises PersistenceWriteFailed when the second attempt fails too.
    """
    delay = settings.PERSIST_RETRY_BACKOFF if backoff is None else backoff
    try:
        return await operation(*args, **kwargs)
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Persistence write %s failed, retrying in %.2fs: %s", operation.__name__, delay, exc)
    await asyncio.sleep(delay)
    try:
        return await operation(*args, **kwargs)
    except (SQLAlchemyError, OSError) as exc:
        raise PersistenceWriteFailed(detail=f"{operation.__name__}: {exc}") from exc


class PersistenceBridge:
    """Reads and writes threads, messages and stream records."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    # -- threads ---------------------------------------------------------

    async def create_thread(
        self, identity: Identity, model_id: Optional[str] = None, title: str = "New Chat"
    ) -> Conversation:
        async with self._session_factory() as db:
            conversation = Conversation(
                owner_kind=identity.kind.value,
                owner_id=identity.subject,
                title=title,
                model_id=model_id,
            )
            db.add(conversation)
            await db.commit()
            await db.refresh(conversation)
            return conversation

    async def get_thread(self, thread_id: str, identity: Identity) -> Conversation:
        async with self._session_factory() as db:
            return await self._owned_thread(db, thread_id, identity)

    async def update_thread_title(self, thread_id: str, title: str, identity: Identity) -> Conversation:
        async with self._session_factory() as db:
            conversation = await self._owned_thread(db, thread_id, identity)
            conversation.title = title[:200]
            await db.commit()
            await db.refresh(conversation)
            return conversation

    # -- messages --------------------------------------------------------

    async def get_thread_messages(
        self,
        thread_id: str,
        identity: Identity,
        before: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ChatMessage]:
        """Messages in thread order.

        ``before`` and ``limit`` select a page of older history: the ``limit``
        messages immediately preceding message ``before`` (or the newest
        ``limit`` messages when ``before`` is not given).
        """
        async with self._session_factory() as db:
            await self._owned_thread(db, thread_id, identity)
            query = select(Message).filter(Message.thread_id == thread_id)
            if before is not None:
                anchor = await self._message(db, thread_id, before)
                query = query.filter(Message.position < anchor.position)
            if limit is not None:
                query = query.order_by(Message.position.desc()).limit(limit)
                rows = list(reversed((await db.execute(query)).scalars().all()))
            else:
                rows = (await db.execute(query.order_by(Message.position))).scalars().all()
            return [to_chat_message(row) for row in rows]

    async def get_message_by_stream(
        self, thread_id: str, stream_id: str, identity: Identity
    ) -> Optional[ChatMessage]:
        async with self._session_factory() as db:
            await self._owned_thread(db, thread_id, identity)
            result = await db.execute(
                select(Message).filter(
                    Message.thread_id == thread_id,
                    Message.stream_id == stream_id,
                )
            )
            row = result.scalars().first()
            return to_chat_message(row) if row else None

    async def append_message(self, thread_id: str, message: ChatMessage, identity: Identity) -> ChatMessage:
        """Persist a message at the end of the thread; returns it with its permanent id."""
        async with self._session_factory() as db:
            conversation = await self._owned_thread(db, thread_id, identity)
            position = (await db.execute(
                select(func.coalesce(func.max(Message.position), 0)).filter(Message.thread_id == thread_id)
            )).scalar_one() + 1

            row = Message(
                thread_id=thread_id,
                position=position,
                role=message.role,
                content=message.content,
                reasoning=message.reasoning,
                attachments=[a.model_dump() for a in message.attachments],
                tool_invocations=[t.model_dump(mode="json") for t in message.tool_invocations],
                is_streaming=message.is_streaming,
                stream_id=message.stream_id,
                model_id=message.model_id,
                finish_reason=message.finish_reason,
            )
            if not is_provisional(message.id):
                row.id = message.id
            db.add(row)
            conversation.message_count = (conversation.message_count or 0) + 1
            await db.commit()
            await db.refresh(row)
            return to_chat_message(row)

    async def update_message(self, thread_id: str, message_id: str, identity: Identity, **fields: Any) -> ChatMessage:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update message fields: {sorted(unknown)}")

        if "tool_invocations" in fields:
            fields["tool_invocations"] = [
                t.model_dump(mode="json") if isinstance(t, ToolInvocation) else t
                for t in fields["tool_invocations"]
            ]
        if "attachments" in fields:
            fields["attachments"] = [
                a.model_dump() if isinstance(a, Attachment) else a for a in fields["attachments"]
            ]

        async with self._session_factory() as db:
            await self._owned_thread(db, thread_id, identity)
            row = await self._message(db, thread_id, message_id)
            for key, value in fields.items():
                setattr(row, key, value)
            await db.commit()
            await db.refresh(row)
            return to_chat_message(row)

    async def finalize_streaming_messages(
        self, thread_id: str, identity: Identity, finish_reason: str = "interrupted"
    ) -> int:
        """Mark every message of the thread still flagged streaming as finished."""
        async with self._session_factory() as db:
            await self._owned_thread(db, thread_id, identity)
            result = await db.execute(
                update(Message)
                .where(Message.thread_id == thread_id, Message.is_streaming.is_(True))
                .values(is_streaming=False, finish_reason=finish_reason)
            )
            await db.commit()
            return result.rowcount

    async def delete_message(self, thread_id: str, message_id: str, identity: Identity) -> None:
        async with self._session_factory() as db:
            conversation = await self._owned_thread(db, thread_id, identity)
            row = await self._message(db, thread_id, message_id)
            await db.delete(row)
            conversation.message_count = max(0, (conversation.message_count or 0) - 1)
            await db.commit()

    async def delete_last_assistant_message(self, thread_id: str, identity: Identity) -> str:
        """Delete the newest assistant message; returns its id."""
        async with self._session_factory() as db:
            conversation = await self._owned_thread(db, thread_id, identity)
            result = await db.execute(
                select(Message)
                .filter(Message.thread_id == thread_id, Message.role == "assistant")
                .order_by(Message.position.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise MessageNotFound("No assistant message to remove.")
            message_id = row.id
            await db.delete(row)
            conversation.message_count = max(0, (conversation.message_count or 0) - 1)
            await db.commit()
            return message_id

    # -- resume token channel --------------------------------------------

    async def open_stream(self, thread_id: str, stream_id: str, identity: Identity) -> None:
        async with self._session_factory() as db:
            conversation = await self._owned_thread(db, thread_id, identity)
            db.add(StreamRecord(stream_id=stream_id, thread_id=thread_id, status="active"))
            conversation.active_stream_id = stream_id
            await db.commit()

    async def close_stream(self, thread_id: str, stream_id: str, status: str) -> None:
        """Mark a stream finished and clear the thread's token if it still points at it.

        Not identity-scoped: only the engine closes streams it opened.
        """
        async with self._session_factory() as db:
            await db.execute(
                update(StreamRecord)
                .where(StreamRecord.stream_id == stream_id)
                .values(status=status, completed_at=datetime.now(timezone.utc))
            )
            await db.execute(
                update(Conversation)
                .where(Conversation.id == thread_id, Conversation.active_stream_id == stream_id)
                .values(active_stream_id=None)
            )
            await db.commit()

    async def get_active_stream(self, thread_id: str, identity: Identity) -> Optional[str]:
        async with self._session_factory() as db:
            conversation = await self._owned_thread(db, thread_id, identity)
            return conversation.active_stream_id

    # -- helpers ---------------------------------------------------------

    @staticmethod
    async def _owned_thread(db: AsyncSession, thread_id: str, identity: Identity) -> Conversation:
        result = await db.execute(
            select(Conversation).filter(
                Conversation.id == thread_id,
                Conversation.owner_kind == identity.kind.value,
                Conversation.owner_id == identity.subject,
            )
        )
        conversation = result.scalar_one_or_none()
        if conversation is None:
            raise ThreadNotFound()
        return conversation

    @staticmethod
    async def _message(db: AsyncSession, thread_id: str, message_id: str) -> Message:
        result = await db.execute(
            select(Message).filter(Message.id == message_id, Message.thread_id == thread_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise MessageNotFound()
        return row
