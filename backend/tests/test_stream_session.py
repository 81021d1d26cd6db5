"""
Tests for stream sessions and the session manager.

Tests cover:
- Happy path streaming and the final flush
- Phase changes as deltas arrive
- Cancel with and without partial save
- One active session per thread (eviction with partial save)
- Provider failures keep partial content
- Persistence failures keep content in memory and never strand a streaming row
"""

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from threadline.errors import NetworkInterrupted, ThreadNotFound
from threadline.schemas.message import DeltaType, GenerationOptions
from threadline.services.phase import Phase
from threadline.services.stream_session import SessionStatus

from conftest import done, reasoning, seed_thread, text, tool_call, tool_result, until


async def broken_write(*args, **kwargs):
    raise OperationalError("UPDATE messages", {}, Exception("disk I/O error"))


# =============================================================================
# Happy path
# =============================================================================

class TestHappyPath:

    @pytest.mark.asyncio
    async def test_hello_hi_there(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice, "Hello")
        provider.queue(text("Hi"), text(" there"))

        handle = await manager.start(thread_id, alice, history, GenerationOptions())
        final = await handle.wait()

        assert final.content == "Hi there"
        assert not final.is_streaming
        assert handle.session.phase_at(1) == Phase.RESPONDING
        assert handle.session.status == SessionStatus.DONE

        messages = await persistence.get_thread_messages(thread_id, alice)
        assert [(m.role, m.content, m.is_streaming) for m in messages] == [
            ("user", "Hello", False),
            ("assistant", "Hi there", False),
        ]
        assert manager.active_session(thread_id) is None
        assert await persistence.get_active_stream(thread_id, alice) is None

    @pytest.mark.asyncio
    async def test_deltas_arrive_in_order_with_sequence_numbers(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice)
        provider.queue(text("a"), text("b"), text("c"), done(token_count=7))

        handle = await manager.start(thread_id, alice, history, GenerationOptions())
        received = [delta async for delta in handle.deltas()]

        assert [d.seq for d in received] == [1, 2, 3, 4]
        assert [d.content for d in received[:3]] == ["a", "b", "c"]
        assert received[-1].type == DeltaType.DONE
        final = await handle.wait()
        assert final.content == "abc"
        assert final.finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_placeholder_is_streaming_while_generating(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice)
        gate = asyncio.Event()
        provider.queue(text("Hi"), gate, text(" there"))

        handle = await manager.start(thread_id, alice, history, GenerationOptions())
        await until(lambda: handle.session.content == "Hi")

        messages = await persistence.get_thread_messages(thread_id, alice)
        assert messages[-1].is_streaming
        assert messages[-1].id == handle.message_id
        assert await persistence.get_active_stream(thread_id, alice) == handle.stream_id
        assert handle.session.phase == Phase.RESPONDING

        gate.set()
        final = await handle.wait()
        assert final.id == messages[-1].id

    @pytest.mark.asyncio
    async def test_thinking_then_responding(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice)
        gate = asyncio.Event()
        provider.queue(gate, reasoning("Let me think"), text("Answer"))

        handle = await manager.start(thread_id, alice, history, GenerationOptions(model_id="thinker-1"))
        # thinking model selected: thinking before any token
        assert handle.session.phase == Phase.THINKING

        gate.set()
        final = await handle.wait()
        assert handle.session.phase_at(1) == Phase.THINKING
        assert handle.session.phase_at(2) == Phase.RESPONDING
        assert final.reasoning == "Let me think"
        assert final.content == "Answer"

    @pytest.mark.asyncio
    async def test_browsing_then_responding(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice, "What is new today?")
        provider.queue(
            tool_call("call_1", "fetch_page"),
            tool_call("call_1", "fetch_page", state="call", args={"url": "https://example.com"}),
            tool_result("call_1", "fetch_page", {"text": "news"}),
            text("Here is the news"),
        )

        handle = await manager.start(thread_id, alice, history, GenerationOptions(enable_browsing=True))
        final = await handle.wait()

        session = handle.session
        assert session.phase_at(1) == Phase.BROWSING
        assert session.phase_at(2) == Phase.BROWSING
        assert session.phase_at(3) == Phase.QUEUED
        assert session.phase_at(4) == Phase.RESPONDING
        assert len(final.tool_invocations) == 1
        invocation = final.tool_invocations[0]
        assert invocation.state == "result"
        assert invocation.args == {"url": "https://example.com"}
        assert invocation.result == {"text": "news"}


# =============================================================================
# Cancellation
# =============================================================================

class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_with_partial_save(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice)
        gate = asyncio.Event()
        provider.queue(text("The answer"), text(" is"), gate, text(" 42"))

        handle = await manager.start(thread_id, alice, history, GenerationOptions())
        await until(lambda: handle.session.content == "The answer is")

        result = await manager.cancel(handle, persist_partial=True)

        assert result.saved
        assert result.message.content == "The answer is"
        assert not result.message.is_streaming
        assert result.message.finish_reason == "stopped"
        assert handle.session.status == SessionStatus.CANCELLED

        messages = await persistence.get_thread_messages(thread_id, alice)
        assert [m.content for m in messages] == ["Hello", "The answer is"]
        assert not any(m.is_streaming for m in messages)
        assert manager.active_session(thread_id) is None

    @pytest.mark.asyncio
    async def test_cancel_without_save_discards_placeholder(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice)
        gate = asyncio.Event()
        provider.queue(text("Draft"), gate)

        handle = await manager.start(thread_id, alice, history, GenerationOptions())
        await until(lambda: handle.session.content == "Draft")
        result = await manager.cancel(handle, persist_partial=False)

        assert not result.saved
        messages = await persistence.get_thread_messages(thread_id, alice)
        assert [m.role for m in messages] == ["user"]

    @pytest.mark.asyncio
    async def test_cancel_before_any_token_removes_placeholder(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice)
        gate = asyncio.Event()
        provider.queue(gate, text("never"))

        handle = await manager.start(thread_id, alice, history, GenerationOptions())
        result = await manager.cancel(handle, persist_partial=True)

        assert not result.saved
        assert [m.role for m in await persistence.get_thread_messages(thread_id, alice)] == ["user"]

    @pytest.mark.asyncio
    async def test_cancel_after_completion_reports_finished(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice)
        provider.queue(text("Done already"))

        handle = await manager.start(thread_id, alice, history, GenerationOptions())
        await handle.wait()
        result = await manager.cancel(handle, persist_partial=True)

        assert result.already_finished

    @pytest.mark.asyncio
    async def test_reader_sees_end_of_stream_after_cancel(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice)
        gate = asyncio.Event()
        provider.queue(text("partial"), gate)

        handle = await manager.start(thread_id, alice, history, GenerationOptions())
        await until(lambda: handle.session.cursor == 1)
        reader = asyncio.create_task(handle.wait())
        await manager.cancel(handle, persist_partial=True)

        final = await asyncio.wait_for(reader, timeout=2)
        assert final.content == "partial"


# =============================================================================
# One active session per thread
# =============================================================================

class TestEviction:

    @pytest.mark.asyncio
    async def test_second_start_cancels_first_with_partial_save(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice)
        gate = asyncio.Event()
        provider.queue(text("first partial"), gate)

        first = await manager.start(thread_id, alice, history, GenerationOptions())
        await until(lambda: first.session.content == "first partial")

        provider.queue(text("second"))
        second = await manager.start(thread_id, alice, history, GenerationOptions())

        assert first.session.status == SessionStatus.CANCELLED
        assert manager.active_session(thread_id) is second.session
        await second.wait()

        messages = await persistence.get_thread_messages(thread_id, alice)
        assert [(m.content, m.finish_reason) for m in messages[1:]] == [
            ("first partial", "stopped"),
            ("second", "stop"),
        ]
        assert not any(m.is_streaming for m in messages)


# =============================================================================
# Failures
# =============================================================================

class TestFailures:

    @pytest.mark.asyncio
    async def test_provider_error_keeps_partial_content(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice)
        provider.queue(text("Partial"), ConnectionError("network down"))

        handle = await manager.start(thread_id, alice, history, GenerationOptions())
        final = await handle.wait()

        session = handle.session
        assert session.status == SessionStatus.ERROR
        assert session.phase == Phase.ERROR
        assert isinstance(session.error, NetworkInterrupted)
        assert session.log[-1].type == DeltaType.ERROR
        assert session.log[-1].error_code == "network_interrupted"
        assert final.content == "Partial"
        assert final.finish_reason == "error"
        assert not final.is_streaming

    @pytest.mark.asyncio
    async def test_provider_error_without_output_leaves_no_message(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice)
        provider.queue(RuntimeError("upstream 500"))

        handle = await manager.start(thread_id, alice, history, GenerationOptions())
        final = await handle.wait()

        assert final is None
        assert handle.session.status == SessionStatus.ERROR
        assert [m.role for m in await persistence.get_thread_messages(thread_id, alice)] == ["user"]
        assert await persistence.get_active_stream(thread_id, alice) is None

    @pytest.mark.asyncio
    async def test_partial_save_failure_keeps_content_in_memory(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice)
        gate = asyncio.Event()
        provider.queue(text("The answer is"), gate)

        handle = await manager.start(thread_id, alice, history, GenerationOptions())
        await until(lambda: handle.session.content == "The answer is")
        persistence.update_message = broken_write

        result = await manager.cancel(handle, persist_partial=True)

        assert not result.saved
        assert result.unsaved_content == "The answer is"
        assert handle.session.status == SessionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_final_flush_failure_keeps_content_in_memory(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice)
        gate = asyncio.Event()
        provider.queue(text("Hi there"), gate)

        handle = await manager.start(thread_id, alice, history, GenerationOptions())
        await until(lambda: handle.session.content == "Hi there")
        persistence.update_message = broken_write
        gate.set()

        final = await handle.wait()

        assert final is None
        assert handle.session.unsaved_content == "Hi there"
        assert handle.session.status == SessionStatus.DONE
        assert manager.active_session(thread_id) is None

    @pytest.mark.asyncio
    async def test_failed_final_save_leaves_no_streaming_row(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice)
        gate = asyncio.Event()
        provider.queue(text("Hi there"), gate)

        first = await manager.start(thread_id, alice, history, GenerationOptions())
        await until(lambda: first.session.content == "Hi there")
        persistence.update_message = broken_write
        gate.set()
        assert await first.wait() is None
        del persistence.update_message

        second_gate = asyncio.Event()
        provider.queue(text("Again"), second_gate)
        second = await manager.start(thread_id, alice, history, GenerationOptions())
        await until(lambda: second.session.content == "Again")

        streaming = [m for m in await persistence.get_thread_messages(thread_id, alice) if m.is_streaming]
        assert [m.id for m in streaming] == [second.session.message_id]

        second_gate.set()
        await second.wait()
        messages = await persistence.get_thread_messages(thread_id, alice)
        assert not any(m.is_streaming for m in messages)

    @pytest.mark.asyncio
    async def test_next_start_finalises_stuck_placeholder(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice)
        gate = asyncio.Event()
        provider.queue(text("Hi there"), gate)

        first = await manager.start(thread_id, alice, history, GenerationOptions())
        await until(lambda: first.session.content == "Hi there")
        stuck_id = first.session.message_id
        persistence.update_message = broken_write
        persistence.delete_message = broken_write
        gate.set()
        await first.wait()
        del persistence.update_message
        del persistence.delete_message

        provider.queue(text("Again"))
        second = await manager.start(thread_id, alice, history, GenerationOptions())
        await second.wait()

        messages = {m.id: m for m in await persistence.get_thread_messages(thread_id, alice)}
        assert not messages[stuck_id].is_streaming
        assert messages[stuck_id].finish_reason == "interrupted"
        assert not any(m.is_streaming for m in messages.values())

    @pytest.mark.asyncio
    async def test_deleted_placeholder_is_written_afresh(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice, "Hello")
        gate = asyncio.Event()
        provider.queue(text("Hi there"), gate)

        handle = await manager.start(thread_id, alice, history, GenerationOptions())
        await until(lambda: handle.session.content == "Hi there")
        await persistence.delete_message(thread_id, handle.session.message_id, alice)
        gate.set()

        final = await handle.wait()

        assert final.content == "Hi there"
        assert not final.is_streaming
        assert handle.session.unsaved_content is None
        messages = await persistence.get_thread_messages(thread_id, alice)
        assert [(m.role, m.content) for m in messages] == [("user", "Hello"), ("assistant", "Hi there")]

    @pytest.mark.asyncio
    async def test_cancel_saves_partial_when_placeholder_was_deleted(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice)
        gate = asyncio.Event()
        provider.queue(text("The answer is"), gate)

        handle = await manager.start(thread_id, alice, history, GenerationOptions())
        await until(lambda: handle.session.content == "The answer is")
        await persistence.delete_message(thread_id, handle.session.message_id, alice)

        result = await manager.cancel(handle, persist_partial=True)

        assert result.saved
        assert result.message.content == "The answer is"
        assert result.message.finish_reason == "stopped"
        messages = await persistence.get_thread_messages(thread_id, alice)
        assert [m.content for m in messages] == ["Hello", "The answer is"]

    @pytest.mark.asyncio
    async def test_missing_thread_on_save_keeps_content_in_memory(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice)
        gate = asyncio.Event()
        provider.queue(text("Hi there"), gate)

        handle = await manager.start(thread_id, alice, history, GenerationOptions())
        await until(lambda: handle.session.content == "Hi there")

        async def thread_gone(*args, **kwargs):
            raise ThreadNotFound()

        persistence.update_message = thread_gone
        gate.set()

        assert await handle.wait() is None
        assert handle.session.unsaved_content == "Hi there"
        assert manager.active_session(thread_id) is None


# =============================================================================
# Bookkeeping
# =============================================================================

class TestBookkeeping:

    @pytest.mark.asyncio
    async def test_thread_locks_are_dropped_when_idle(self, manager, provider, persistence, alice):
        thread_id, history = await seed_thread(persistence, alice)
        provider.queue(text("Hi"))

        handle = await manager.start(thread_id, alice, history, GenerationOptions())
        await handle.wait()
        await manager.cancel_thread(thread_id)

        assert len(manager._locks) == 0
