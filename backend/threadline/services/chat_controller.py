"""
Chat controller: the operations a client drives.

Send, stop, retry and resume are orchestrated here on top of the quota gate,
the session manager and the persistence bridge. ``view`` produces the
render-ready state of a thread.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..errors import ChatError, ContentTooLarge, MessageNotFound, QuotaExceeded, SessionNotFound
from ..schemas.conversation import ThinkingDisplay, ThreadView
from ..schemas.message import Attachment, ChatMessage, GenerationOptions
from ..schemas.quota import Identity, QuotaUsage
from ..utils.ids import provisional_id
from .persistence import PersistenceBridge, derive_title
from .phase import Phase, is_loading, status_text, thinking_display
from .quota_service import QuotaGate
from .reconciler import MessageReconciler
from .stream_session import CancelResult, SessionHandle, SessionManager


logger = logging.getLogger(__name__)


class ChatController:
    """Entry point for every chat operation, scoped to one identity per call."""

    def __init__(
        self,
        persistence: PersistenceBridge,
        quota: QuotaGate,
        sessions: SessionManager,
        max_input_chars: Optional[int] = None,
    ):
        self._persistence = persistence
        self._quota = quota
        self._sessions = sessions
        self._max_input_chars = max_input_chars or settings.MAX_INPUT_CHARS
        self._reconcilers: Dict[Tuple[str, str], MessageReconciler] = {}

    async def send(
        self,
        identity: Identity,
        content: str,
        thread_id: Optional[str] = None,
        attachments: Sequence[Attachment] = (),
        options: Optional[GenerationOptions] = None,
    ) -> SessionHandle:
        """Append a user message and start generating the answer.

        Creates the thread when ``thread_id`` is None.
        """
        options = options or GenerationOptions()
        if len(content) > self._max_input_chars:
            raise ContentTooLarge(detail=f"{len(content)} characters > {self._max_input_chars}")

        if thread_id is not None:
            # unknown threads must not cost quota
            await self._persistence.get_thread(thread_id, identity)

        await self._admit(identity)

        if thread_id is None:
            thread = await self._persistence.create_thread(
                identity, model_id=options.model_id, title=derive_title(content)
            )
            thread_id = thread.id
            logger.info("[thread=%s] created for %s", thread_id, identity.key)
        else:
            # a running answer is saved first so the new prompt includes it
            await self._sessions.cancel_thread(thread_id, persist_partial=True)

        history = await self._persistence.get_thread_messages(thread_id, identity)
        user_message = await self._persistence.append_message(
            thread_id,
            ChatMessage(id=provisional_id(), role="user", content=content, attachments=list(attachments)),
            identity,
        )
        prompt = [m for m in history if not m.is_streaming] + [user_message]
        return await self._sessions.start(thread_id, identity, prompt, options)

    async def stop(self, identity: Identity, thread_id: str, persist_partial: bool = True) -> CancelResult:
        await self._persistence.get_thread(thread_id, identity)
        return await self._sessions.cancel_thread(thread_id, persist_partial=persist_partial)

    async def retry(
        self, identity: Identity, thread_id: str, options: Optional[GenerationOptions] = None
    ) -> SessionHandle:
        """Regenerate the answer to the last user message.

        Order: quota check, cancel without save, delete the discarded answer,
        resubmit. Cancel and delete failures do not stop the resubmission.
        """
        options = options or GenerationOptions()
        messages = await self._persistence.get_thread_messages(thread_id, identity)
        if _last_user_index(messages) is None:
            raise MessageNotFound("There is no message to retry.")

        await self._admit(identity)

        try:
            await self._sessions.cancel_thread(thread_id, persist_partial=False)
        except (ChatError, SQLAlchemyError) as exc:
            logger.warning("[thread=%s] retry: cancelling the active session failed: %s", thread_id, exc)

        messages = await self._persistence.get_thread_messages(thread_id, identity)
        last_user = _last_user_index(messages)
        if last_user is None:
            raise MessageNotFound("There is no message to retry.")

        if any(m.role == "assistant" for m in messages[last_user + 1:]):
            try:
                removed = await self._persistence.delete_last_assistant_message(thread_id, identity)
                logger.info("[thread=%s] retry: removed assistant message %s", thread_id, removed)
            except (MessageNotFound, SQLAlchemyError) as exc:
                logger.warning("[thread=%s] retry: could not remove last assistant message: %s", thread_id, exc)

        return await self._sessions.start(thread_id, identity, messages[:last_user + 1], options)

    async def resume(
        self,
        identity: Identity,
        thread_id: str,
        stream_id: Optional[str] = None,
        after: Optional[int] = None,
    ) -> SessionHandle:
        """Re-attach to the thread's generation.

        Without ``stream_id`` the resume token stored on the thread is used.
        """
        if stream_id is None:
            stream_id = await self._persistence.get_active_stream(thread_id, identity)
        if stream_id is None:
            session = self._sessions.active_session(thread_id)
            if session is None or session.identity.key != identity.key:
                raise SessionNotFound()
            stream_id = session.stream_id
        return await self._sessions.resume(thread_id, stream_id, identity, after=after)

    async def view(
        self,
        identity: Identity,
        thread_id: str,
        history: Sequence[ChatMessage] = (),
        before: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> ThreadView:
        persisted = await self._persistence.get_thread_messages(thread_id, identity, before=before, limit=limit)

        session = self._sessions.active_session(thread_id)
        if session is not None and session.identity.key != identity.key:
            session = None

        key = (identity.key, thread_id)
        reconciler = self._reconcilers.get(key) or MessageReconciler()
        live = session.live_message() if session is not None and before is None else None
        messages = reconciler.reconcile(persisted, live, history)

        if session is None:
            # persisted ids are final once nothing streams; forget the view state
            self._reconcilers.pop(key, None)
            return ThreadView(thread_id=thread_id, messages=messages, phase=Phase.IDLE.value)

        self._reconcilers[key] = reconciler
        phase = session.phase
        return ThreadView(
            thread_id=thread_id,
            messages=messages,
            phase=phase.value,
            status_text=status_text(phase),
            is_loading=is_loading(phase),
            thinking=thinking_display(phase, bool(session.reasoning.strip())) if live is not None else ThinkingDisplay(),
            stream_id=session.stream_id,
            cursor=session.cursor,
        )

    async def usage(self, identity: Identity) -> QuotaUsage:
        return await self._quota.usage(identity)

    async def _admit(self, identity: Identity) -> None:
        if await self._quota.try_consume(identity):
            return
        error = QuotaExceeded()
        if identity.is_anonymous:
            error.action = "sign_in"
        elif identity.plan != "free":
            error.action = "wait"
        raise error


def _last_user_index(messages: List[ChatMessage]) -> Optional[int]:
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].role == "user":
            return index
    return None
