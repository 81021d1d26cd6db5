"""
Stream sessions: one cancellable, resumable generation attempt each.

A ``StreamSession`` consumes a model provider's delta stream in a background
task and keeps the running buffer. ``SessionManager`` owns the one active
session slot per thread, the resume-token index and the persistence flush
when a session ends.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
)

from sqlalchemy.exc import SQLAlchemyError

from ..errors import ChatError, MessageNotFound, ProviderError, ThreadNotFound, classify_exception
from ..schemas.message import ChatMessage, DeltaType, GenerationOptions, StreamDelta, ToolInvocation
from ..schemas.quota import Identity
from ..utils.ids import is_provisional, new_stream_id, provisional_id
from ..utils.locks import KeyedLocks
from .persistence import PersistenceBridge, with_write_retry
from .phase import Phase, PhaseInputs, detect_phase


logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    IDLE = "idle"
    SUBMITTED = "submitted"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({SessionStatus.DONE, SessionStatus.ERROR, SessionStatus.CANCELLED})

_CONTENT_DELTAS = frozenset({DeltaType.TEXT, DeltaType.REASONING, DeltaType.TOOL_CALL, DeltaType.TOOL_RESULT})


class ModelProvider(Protocol):
    """Anything that turns a conversation into an ordered delta stream."""

    def stream(
        self, history: Sequence[ChatMessage], options: GenerationOptions
    ) -> AsyncIterator[StreamDelta]:
        ...


class StreamSession:
    """One generation attempt for one thread."""

    def __init__(
        self,
        thread_id: str,
        identity: Identity,
        history: Sequence[ChatMessage],
        options: GenerationOptions,
        provider: ModelProvider,
        *,
        thinking_model: bool = False,
        stream_id: Optional[str] = None,
    ):
        self.thread_id = thread_id
        self.identity = identity
        self.history = list(history)
        self.options = options
        self.thinking_model = thinking_model
        self.stream_id = stream_id or new_stream_id()
        self.message_id = provisional_id()

        self.status = SessionStatus.IDLE
        self.phase = Phase.IDLE
        self.content = ""
        self.reasoning = ""
        self.finish_reason: Optional[str] = None
        self.token_count = 0
        self.error: Optional[ChatError] = None
        self.log: List[StreamDelta] = []
        self._phases: List[Phase] = []

        self.final_message: Optional[ChatMessage] = None
        self.unsaved_content: Optional[str] = None

        # set once the placeholder write has been attempted, whatever the outcome
        self.placeholder_ready = asyncio.Event()

        self._provider = provider
        self._tools: Dict[str, ToolInvocation] = {}
        self._cancel_event = asyncio.Event()
        self._settled = asyncio.Event()
        self._tick = asyncio.Event()
        self._finishing = False
        self._task: Optional[asyncio.Task] = None

    def __repr__(self):
        return f"<StreamSession thread={self.thread_id} stream={self.stream_id} status={self.status.value}>"

    # -- state ---------------------------------------------------------

    @property
    def persisted(self) -> bool:
        return not is_provisional(self.message_id)

    @property
    def settled(self) -> bool:
        return self._settled.is_set()

    @property
    def is_active(self) -> bool:
        return self.status not in TERMINAL_STATUSES

    @property
    def tool_invocations(self) -> List[ToolInvocation]:
        return [t.model_copy() for t in self._tools.values()]

    @property
    def cursor(self) -> int:
        return len(self.log)

    def phase_at(self, seq: int) -> Phase:
        """Phase computed right after delta ``seq`` was applied."""
        return self._phases[seq - 1]

    def bind_message_id(self, message_id: str) -> None:
        """Swap the provisional id for the permanent one assigned by storage."""
        if self.message_id != message_id:
            logger.debug("[thread=%s stream=%s] bound message id %s", self.thread_id, self.stream_id, message_id)
            self.message_id = message_id

    def phase_inputs(self) -> PhaseInputs:
        return PhaseInputs(
            has_submitted=self.status in (SessionStatus.SUBMITTED, SessionStatus.STREAMING),
            has_received_any_token=any(d.type in _CONTENT_DELTAS for d in self.log),
            has_reasoning_content=bool(self.reasoning.strip()),
            has_active_tool_call=any(t.is_open for t in self._tools.values()),
            user_requested_thinking_model=self.thinking_model,
            user_requested_browsing=self.options.enable_browsing,
            content_so_far=self.content,
            completed=self.status == SessionStatus.DONE,
            errored=self.status == SessionStatus.ERROR,
        )

    def live_message(self) -> ChatMessage:
        """The message as built so far, ready for the reconciler."""
        return ChatMessage(
            id=self.message_id,
            role="assistant",
            content=self.content,
            reasoning=self.reasoning or None,
            tool_invocations=self.tool_invocations,
            is_streaming=self.is_active,
            stream_id=self.stream_id,
            model_id=self.options.model_id,
            finish_reason=self.finish_reason,
        )

    # -- delta application ----------------------------------------------

    def apply(self, delta: StreamDelta) -> StreamDelta:
        """Apply one delta in arrival order and recompute the phase."""
        if not self.is_active:
            logger.debug("[thread=%s stream=%s] dropping late %s delta", self.thread_id, self.stream_id, delta.type.value)
            return delta

        delta = delta.model_copy(update={"seq": len(self.log) + 1})

        if delta.type == DeltaType.TEXT:
            self.content += delta.content or ""
        elif delta.type == DeltaType.REASONING:
            self.reasoning += delta.content or ""
        elif delta.type == DeltaType.TOOL_CALL:
            self._apply_tool_call(delta)
        elif delta.type == DeltaType.TOOL_RESULT:
            self._apply_tool_result(delta)
        elif delta.type == DeltaType.DONE:
            self.finish_reason = delta.finish_reason or "stop"
            self.token_count = delta.token_count or 0
            self.status = SessionStatus.DONE
        elif delta.type == DeltaType.ERROR:
            if self.error is None:
                self.error = ProviderError(detail=delta.error)
            self.finish_reason = "error"
            self.status = SessionStatus.ERROR

        if delta.type in _CONTENT_DELTAS and self.status == SessionStatus.SUBMITTED:
            self.status = SessionStatus.STREAMING

        self.log.append(delta)
        self._update_phase()
        self._phases.append(self.phase)
        return delta

    def _apply_tool_call(self, delta: StreamDelta) -> None:
        existing = self._tools.get(delta.tool_call_id)
        if existing is None:
            self._tools[delta.tool_call_id] = ToolInvocation(
                tool_call_id=delta.tool_call_id,
                tool_name=delta.tool_name or "unknown",
                args=delta.args,
                state=delta.state or "call",
            )
            return
        existing.tool_name = delta.tool_name or existing.tool_name
        if delta.args is not None:
            existing.args = delta.args
        if existing.state != "result":
            existing.state = delta.state or "call"

    def _apply_tool_result(self, delta: StreamDelta) -> None:
        invocation = self._tools.get(delta.tool_call_id)
        if invocation is None:
            invocation = ToolInvocation(tool_call_id=delta.tool_call_id, tool_name=delta.tool_name or "unknown")
            self._tools[delta.tool_call_id] = invocation
        invocation.result = delta.result
        invocation.state = "result"

    def _update_phase(self) -> None:
        self.phase = detect_phase(self.phase_inputs())
        # wake every events() reader, then arm a fresh tick for the next change
        self._tick.set()
        self._tick = asyncio.Event()

    def _set_status(self, status: SessionStatus) -> None:
        self.status = status
        self._update_phase()

    # -- lifecycle -------------------------------------------------------

    def launch(self, on_settle: Callable[["StreamSession"], Awaitable[None]]) -> asyncio.Task:
        self._set_status(SessionStatus.SUBMITTED)
        self._task = asyncio.create_task(self._run(on_settle), name=f"stream-{self.stream_id}")
        return self._task

    async def _run(self, on_settle: Callable[["StreamSession"], Awaitable[None]]) -> None:
        try:
            await self._consume()
        except asyncio.CancelledError:
            if not self._cancel_event.is_set():
                raise
        if self._cancel_event.is_set():
            # stop() owns the teardown from here
            return

        if self.is_active:
            self.apply(StreamDelta(type=DeltaType.DONE, finish_reason="stop"))
        self._finishing = True
        try:
            await on_settle(self)
        finally:
            self.settle()

    async def _consume(self) -> None:
        stream = self._provider.stream(self.history, self.options)
        try:
            async for delta in stream:
                if self._cancel_event.is_set():
                    break
                self.apply(delta)
                if not self.is_active:
                    break
                # yield between chunks so readers see every delta
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify_exception(exc)
            logger.error(
                "[thread=%s stream=%s] generation failed: %s (%s)",
                self.thread_id, self.stream_id, error.code, error.detail,
            )
            self.error = error
            self.apply(StreamDelta(type=DeltaType.ERROR, error=error.user_message, error_code=error.code))
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as exc:
                    logger.debug("[stream=%s] provider stream close failed: %s", self.stream_id, exc)

    async def stop(self) -> bool:
        """Interrupt consumption. Returns False if the session already finished."""
        if self._finishing or self.settled or not self.is_active:
            return False
        self._cancel_event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        return True

    def mark_cancelled(self) -> None:
        self._set_status(SessionStatus.CANCELLED)

    def settle(self) -> None:
        if not self._settled.is_set():
            self._settled.set()
            self._tick.set()

    async def wait_settled(self) -> None:
        await self._settled.wait()

    async def events(self, after: int = 0) -> AsyncIterator[StreamDelta]:
        """Deltas with ``seq > after``, live until the session settles."""
        index = max(after, 0)
        while True:
            while index < len(self.log):
                yield self.log[index]
                index += 1
            if self._settled.is_set():
                return
            await self._tick.wait()


@dataclass
class SessionHandle:
    """What a caller gets back from start or resume."""

    thread_id: str
    stream_id: str
    session: Optional[StreamSession] = None
    cursor: int = 0
    snapshot: Optional[ChatMessage] = None
    final_message: Optional[ChatMessage] = None

    @property
    def message_id(self) -> Optional[str]:
        if self.session is not None:
            return self.session.message_id
        return self.final_message.id if self.final_message else None

    @property
    def completed(self) -> bool:
        return self.session is None or self.session.settled

    async def deltas(self) -> AsyncIterator[StreamDelta]:
        if self.session is None:
            return
        async for delta in self.session.events(self.cursor):
            self.cursor = delta.seq
            yield delta
        self.final_message = self.session.final_message

    async def wait(self) -> Optional[ChatMessage]:
        """Drain the stream and return the persisted result."""
        async for _ in self.deltas():
            pass
        if self.session is not None:
            await self.session.wait_settled()
            self.final_message = self.session.final_message
        return self.final_message


@dataclass
class CancelResult:
    saved: bool = False
    already_finished: bool = False
    message: Optional[ChatMessage] = None
    unsaved_content: Optional[str] = None


class SessionManager:
    """Single active session per thread, plus the flush to durable storage."""

    def __init__(
        self,
        provider: ModelProvider,
        persistence: PersistenceBridge,
        thinking_models: Sequence[str] = (),
    ):
        self._provider = provider
        self._persistence = persistence
        self._thinking_models = set(thinking_models)
        self._active: Dict[str, StreamSession] = {}
        self._by_stream: Dict[str, StreamSession] = {}
        self._locks = KeyedLocks()

    def active_session(self, thread_id: str) -> Optional[StreamSession]:
        return self._active.get(thread_id)

    def is_thinking_model(self, options: GenerationOptions) -> bool:
        return options.enable_thinking or (options.model_id in self._thinking_models)

    async def start(
        self,
        thread_id: str,
        identity: Identity,
        history: Sequence[ChatMessage],
        options: GenerationOptions,
    ) -> SessionHandle:
        """Begin a generation, evicting (with partial save) any running one."""
        async with self._locks.hold(thread_id):
            previous = self._active.get(thread_id)
            if previous is not None:
                logger.info(
                    "[thread=%s stream=%s] evicting active session before new start",
                    thread_id, previous.stream_id,
                )
                await self._cancel(previous, persist_partial=True)

            session = StreamSession(
                thread_id,
                identity,
                history,
                options,
                self._provider,
                thinking_model=self.is_thinking_model(options),
            )
            self._active[thread_id] = session
            self._by_stream[session.stream_id] = session
            session.launch(self._settle)
            logger.info("[thread=%s stream=%s] session started", thread_id, session.stream_id)

            await self._open(session)
            return SessionHandle(thread_id=thread_id, stream_id=session.stream_id, session=session)

    async def cancel(self, handle: SessionHandle, persist_partial: bool = True) -> CancelResult:
        return await self.cancel_thread(handle.thread_id, persist_partial=persist_partial, stream_id=handle.stream_id)

    async def cancel_thread(
        self, thread_id: str, persist_partial: bool = True, stream_id: Optional[str] = None
    ) -> CancelResult:
        async with self._locks.hold(thread_id):
            session = self._active.get(thread_id)
            if session is None or (stream_id is not None and session.stream_id != stream_id):
                return CancelResult(already_finished=True)
            return await self._cancel(session, persist_partial)

    async def resume(
        self,
        thread_id: str,
        stream_id: str,
        identity: Identity,
        after: Optional[int] = None,
    ) -> SessionHandle:
        """Re-attach to a generation by its resume token.

        With ``after`` the caller receives every delta past that sequence
        number; without it the handle carries a snapshot of the message so
        far and continues from the current position.
        """
        session = self._by_stream.get(stream_id)
        if session is not None and session.thread_id == thread_id:
            if session.identity.key != identity.key:
                raise ThreadNotFound()
            if after is None:
                return SessionHandle(
                    thread_id=thread_id,
                    stream_id=stream_id,
                    session=session,
                    cursor=session.cursor,
                    snapshot=session.live_message(),
                )
            return SessionHandle(thread_id=thread_id, stream_id=stream_id, session=session, cursor=max(after, 0))

        # the generation is not running in this process any more
        message = await self._persistence.get_message_by_stream(thread_id, stream_id, identity)
        if message is not None and message.is_streaming:
            logger.warning("[thread=%s stream=%s] finalising orphaned streaming message", thread_id, stream_id)
            message = await self._persistence.update_message(
                thread_id, message.id, identity, is_streaming=False, finish_reason="interrupted"
            )
            await self._persistence.close_stream(thread_id, stream_id, "error")
        elif await self._persistence.get_active_stream(thread_id, identity) == stream_id:
            await self._persistence.close_stream(thread_id, stream_id, "error")
        return SessionHandle(thread_id=thread_id, stream_id=stream_id, final_message=message)

    async def shutdown(self) -> None:
        for thread_id in list(self._active):
            try:
                await self.cancel_thread(thread_id, persist_partial=True)
            except Exception:
                logger.exception("[thread=%s] failed to stop session during shutdown", thread_id)

    # -- internals -------------------------------------------------------

    async def _open(self, session: StreamSession) -> None:
        """Record the resume token and the streaming placeholder."""
        try:
            # at most one streaming row per thread: close out rows no session owns any more
            stale = await self._persistence.finalize_streaming_messages(
                session.thread_id, session.identity, finish_reason="interrupted"
            )
            if stale:
                logger.warning("[thread=%s] finalised %d stale streaming message(s)", session.thread_id, stale)
        except (SQLAlchemyError, ChatError) as exc:
            logger.warning("[thread=%s] could not finalise stale streaming messages: %s", session.thread_id, exc)

        try:
            await self._persistence.open_stream(session.thread_id, session.stream_id, session.identity)
            placeholder = await self._persistence.append_message(
                session.thread_id,
                ChatMessage(
                    id=session.message_id,
                    role="assistant",
                    is_streaming=True,
                    stream_id=session.stream_id,
                    model_id=session.options.model_id,
                ),
                session.identity,
            )
            session.bind_message_id(placeholder.id)
        except (SQLAlchemyError, ChatError) as exc:
            logger.warning(
                "[thread=%s stream=%s] could not record streaming placeholder: %s",
                session.thread_id, session.stream_id, exc,
            )
        finally:
            session.placeholder_ready.set()

    async def _settle(self, session: StreamSession) -> None:
        """Flush a session that reached done or error on its own."""
        await session.placeholder_ready.wait()
        errored = session.status == SessionStatus.ERROR
        try:
            if errored and not _has_output(session):
                await self._discard(session)
            else:
                await self._save(session)
        finally:
            await self._release(session, "error" if errored else "completed")

    async def _cancel(self, session: StreamSession, persist_partial: bool) -> CancelResult:
        if not await session.stop():
            await session.wait_settled()
            return CancelResult(
                saved=session.final_message is not None,
                already_finished=True,
                message=session.final_message,
                unsaved_content=session.unsaved_content,
            )

        await session.placeholder_ready.wait()
        result = CancelResult()
        try:
            if persist_partial and _has_output(session):
                result.message = await self._save(session, finish_reason="stopped")
                result.saved = result.message is not None
                result.unsaved_content = session.unsaved_content
            else:
                await self._discard(session)
        finally:
            session.mark_cancelled()
            await self._release(session, "cancelled")
            session.settle()
        logger.info(
            "[thread=%s stream=%s] cancelled (persist_partial=%s, saved=%s)",
            session.thread_id, session.stream_id, persist_partial, result.saved,
        )
        return result

    async def _save(self, session: StreamSession, finish_reason: Optional[str] = None) -> Optional[ChatMessage]:
        """Flush the session's output, or keep it in memory if storage refuses it.

        Never raises a ChatError. When nothing could be saved the content is
        left on ``session.unsaved_content`` and the placeholder stops streaming.
        """
        try:
            try:
                return await self._flush(session, finish_reason=finish_reason)
            except MessageNotFound:
                logger.warning(
                    "[thread=%s stream=%s] placeholder %s disappeared, writing the message afresh",
                    session.thread_id, session.stream_id, session.message_id,
                )
                session.message_id = provisional_id()
                return await self._flush(session, finish_reason=finish_reason)
        except ChatError as exc:
            session.unsaved_content = session.content
            logger.error(
                "[thread=%s stream=%s] save failed, keeping content in memory: %s",
                session.thread_id, session.stream_id, exc.detail or exc.user_message,
            )
            await self._retire_placeholder(session)
            return None

    async def _retire_placeholder(self, session: StreamSession) -> None:
        """Best effort: stop the placeholder streaming, or remove it."""
        if not session.persisted:
            return
        try:
            await self._persistence.update_message(
                session.thread_id, session.message_id, session.identity,
                is_streaming=False, finish_reason="error",
            )
            return
        except (SQLAlchemyError, ChatError) as exc:
            logger.warning(
                "[thread=%s stream=%s] could not finalise placeholder %s, removing it: %s",
                session.thread_id, session.stream_id, session.message_id, exc,
            )
        await self._discard(session)

    async def _flush(self, session: StreamSession, finish_reason: Optional[str] = None) -> ChatMessage:
        fields = dict(
            content=session.content,
            reasoning=session.reasoning or None,
            tool_invocations=session.tool_invocations,
            finish_reason=finish_reason or session.finish_reason,
            token_count=session.token_count,
            is_streaming=False,
        )
        if session.persisted:
            message = await with_write_retry(
                self._persistence.update_message,
                session.thread_id, session.message_id, session.identity, **fields,
            )
        else:
            # the placeholder write failed earlier; write the whole message now
            token_count = fields.pop("token_count")
            message = await with_write_retry(
                self._persistence.append_message,
                session.thread_id,
                ChatMessage(
                    id=session.message_id,
                    role="assistant",
                    stream_id=session.stream_id,
                    model_id=session.options.model_id,
                    **fields,
                ),
                session.identity,
            )
            session.bind_message_id(message.id)
            if token_count:
                message = await with_write_retry(
                    self._persistence.update_message,
                    session.thread_id, message.id, session.identity, token_count=token_count,
                )
        session.final_message = message
        return message

    async def _discard(self, session: StreamSession) -> None:
        if not session.persisted:
            return
        try:
            await self._persistence.delete_message(session.thread_id, session.message_id, session.identity)
        except (SQLAlchemyError, ChatError) as exc:
            logger.warning(
                "[thread=%s stream=%s] could not remove placeholder %s: %s",
                session.thread_id, session.stream_id, session.message_id, exc,
            )

    async def _release(self, session: StreamSession, stream_status: str) -> None:
        try:
            await self._persistence.close_stream(session.thread_id, session.stream_id, stream_status)
        except SQLAlchemyError as exc:
            logger.warning("[thread=%s stream=%s] could not close stream record: %s", session.thread_id, session.stream_id, exc)
        if self._active.get(session.thread_id) is session:
            del self._active[session.thread_id]
        self._by_stream.pop(session.stream_id, None)


def _has_output(session: StreamSession) -> bool:
    return bool(session.content.strip() or session.reasoning.strip() or session.tool_invocations)
