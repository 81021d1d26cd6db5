"""
Tests for the chat controller: send, stop, retry and the thread view.
"""

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from threadline.errors import ContentTooLarge, MessageNotFound, QuotaExceeded, ThreadNotFound
from threadline.schemas.message import GenerationOptions
from threadline.schemas.quota import Identity
from threadline.services import ChatController, InMemoryQuotaStore, QuotaGate, QuotaPolicy
from threadline.services.persistence import derive_title

from conftest import reasoning, text, until


@pytest.fixture
def tight_controller(persistence, manager):
    """Controller whose anonymous allowance is a single message."""
    gate = QuotaGate(InMemoryQuotaStore(QuotaPolicy(anonymous_daily_limit=1)))
    return ChatController(persistence, gate, manager)


# =============================================================================
# Send
# =============================================================================

class TestSend:

    @pytest.mark.asyncio
    async def test_creates_thread_with_title(self, controller, provider, persistence, alice):
        provider.queue(text("Sure, here goes"))

        handle = await controller.send(alice, "Write me a **short** poem about the sea please")
        await handle.wait()

        thread = await persistence.get_thread(handle.thread_id, alice)
        assert thread.title == "Write me a short poem..."
        messages = await persistence.get_thread_messages(handle.thread_id, alice)
        assert [(m.role, m.content) for m in messages] == [
            ("user", "Write me a **short** poem about the sea please"),
            ("assistant", "Sure, here goes"),
        ]

    @pytest.mark.asyncio
    async def test_history_is_sent_to_provider(self, controller, provider, alice):
        provider.queue(text("First answer"))
        first = await controller.send(alice, "First question here")
        await first.wait()

        provider.queue(text("Second answer"))
        second = await controller.send(alice, "Second question here", thread_id=first.thread_id)
        await second.wait()

        history, _ = provider.calls[-1]
        assert [m.content for m in history] == ["First question here", "First answer", "Second question here"]

    @pytest.mark.asyncio
    async def test_send_while_streaming_includes_partial_answer(self, controller, provider, persistence, alice):
        gate = asyncio.Event()
        provider.queue(text("The answer is"), gate)
        first = await controller.send(alice, "What is the answer?")
        await until(lambda: first.session.content == "The answer is")

        provider.queue(text("Fine"))
        second = await controller.send(alice, "Never mind that", thread_id=first.thread_id)
        await second.wait()

        history, _ = provider.calls[-1]
        assert [(m.role, m.content) for m in history] == [
            ("user", "What is the answer?"),
            ("assistant", "The answer is"),
            ("user", "Never mind that"),
        ]
        messages = await persistence.get_thread_messages(first.thread_id, alice)
        assert [m.content for m in messages] == ["What is the answer?", "The answer is", "Never mind that", "Fine"]

    @pytest.mark.asyncio
    async def test_too_large(self, controller, alice):
        with pytest.raises(ContentTooLarge) as exc:
            await controller.send(alice, "x" * 2001)
        assert exc.value.action == "reduce_message"

    @pytest.mark.asyncio
    async def test_quota_exhausted(self, tight_controller, provider, guest):
        provider.queue(text("one"))
        handle = await tight_controller.send(guest, "first message here")
        await handle.wait()

        with pytest.raises(QuotaExceeded) as exc:
            await tight_controller.send(guest, "second message here", thread_id=handle.thread_id)
        assert exc.value.action == "sign_in"
        assert exc.value.status_code == 429

    @pytest.mark.asyncio
    async def test_foreign_thread_costs_no_quota(self, controller, provider, alice, guest):
        provider.queue(text("private"))
        handle = await controller.send(alice, "my own thread")
        await handle.wait()

        with pytest.raises(ThreadNotFound):
            await controller.send(guest, "let me in", thread_id=handle.thread_id)
        assert (await controller.usage(guest)).used == 0


# =============================================================================
# Stop
# =============================================================================

class TestStop:

    @pytest.mark.asyncio
    async def test_stop_saves_partial(self, controller, provider, persistence, alice):
        gate = asyncio.Event()
        provider.queue(text("The answer is"), gate)
        handle = await controller.send(alice, "What is the answer?")
        await until(lambda: handle.session.content == "The answer is")

        result = await controller.stop(alice, handle.thread_id)

        assert result.saved
        assert result.message.content == "The answer is"

    @pytest.mark.asyncio
    async def test_stop_other_identity(self, controller, provider, alice, guest):
        gate = asyncio.Event()
        provider.queue(text("mine"), gate)
        handle = await controller.send(alice, "private question here")

        with pytest.raises(ThreadNotFound):
            await controller.stop(guest, handle.thread_id)
        assert handle.session.is_active

        gate.set()
        await handle.wait()


# =============================================================================
# Retry
# =============================================================================

class TestRetry:

    @pytest.mark.asyncio
    async def test_replaces_last_answer(self, controller, provider, persistence, alice):
        provider.queue(text("First joke"))
        handle = await controller.send(alice, "Tell me a joke")
        await handle.wait()
        before = await persistence.get_thread_messages(handle.thread_id, alice)

        provider.queue(text("Second joke"))
        retried = await controller.retry(alice, handle.thread_id)
        await retried.wait()

        after = await persistence.get_thread_messages(handle.thread_id, alice)
        assert [(m.role, m.content) for m in after] == [("user", "Tell me a joke"), ("assistant", "Second joke")]
        assert sum(m.role == "assistant" for m in after) == sum(m.role == "assistant" for m in before)
        history, _ = provider.calls[-1]
        assert [m.content for m in history] == ["Tell me a joke"]

    @pytest.mark.asyncio
    async def test_retry_while_streaming_discards_partial(self, controller, provider, persistence, alice):
        gate = asyncio.Event()
        provider.queue(text("Half a jo"), gate)
        handle = await controller.send(alice, "Tell me a joke")
        await until(lambda: handle.session.content == "Half a jo")

        provider.queue(text("Fresh joke"))
        retried = await controller.retry(alice, handle.thread_id)
        await retried.wait()

        messages = await persistence.get_thread_messages(handle.thread_id, alice)
        assert [m.content for m in messages] == ["Tell me a joke", "Fresh joke"]
        assert not any(m.is_streaming for m in messages)

    @pytest.mark.asyncio
    async def test_keeps_earlier_turns(self, controller, provider, persistence, alice):
        provider.queue(text("Answer one"))
        first = await controller.send(alice, "Question one")
        await first.wait()
        provider.queue(text("Answer two"))
        second = await controller.send(alice, "Question two", thread_id=first.thread_id)
        await second.wait()

        provider.queue(text("Better answer two"))
        retried = await controller.retry(alice, first.thread_id)
        await retried.wait()

        messages = await persistence.get_thread_messages(first.thread_id, alice)
        assert [m.content for m in messages] == ["Question one", "Answer one", "Question two", "Better answer two"]

    @pytest.mark.asyncio
    async def test_deletion_failure_is_not_fatal(self, controller, provider, persistence, alice):
        provider.queue(text("Original"))
        handle = await controller.send(alice, "Tell me a joke")
        await handle.wait()

        async def broken_delete(*args, **kwargs):
            raise OperationalError("DELETE", {}, Exception("database is locked"))

        persistence.delete_last_assistant_message = broken_delete
        provider.queue(text("Regenerated"))
        retried = await controller.retry(alice, handle.thread_id)
        final = await retried.wait()

        assert final.content == "Regenerated"

    @pytest.mark.asyncio
    async def test_quota_checked_before_cleanup(self, tight_controller, provider, persistence, guest):
        provider.queue(text("Only answer"))
        handle = await tight_controller.send(guest, "Tell me a joke")
        await handle.wait()

        with pytest.raises(QuotaExceeded):
            await tight_controller.retry(guest, handle.thread_id)

        messages = await persistence.get_thread_messages(handle.thread_id, guest)
        assert [m.content for m in messages] == ["Tell me a joke", "Only answer"]

    @pytest.mark.asyncio
    async def test_nothing_to_retry(self, controller, persistence, alice):
        thread = await persistence.create_thread(alice)
        with pytest.raises(MessageNotFound):
            await controller.retry(alice, thread.id)


# =============================================================================
# View
# =============================================================================

class TestView:

    @pytest.mark.asyncio
    async def test_live_view(self, controller, provider, alice):
        gate = asyncio.Event()
        provider.queue(reasoning("pondering"), text("Hi"), gate, text(" there"))
        handle = await controller.send(alice, "Hello there", options=GenerationOptions(model_id="thinker-1"))
        await until(lambda: handle.session.content == "Hi")

        view = await controller.view(alice, handle.thread_id)

        assert view.phase == "responding"
        assert view.status_text == "Generating..."
        assert view.is_loading
        assert view.thinking.visible and view.thinking.force_collapsed
        assert view.stream_id == handle.stream_id
        ids = [m.id for m in view.messages]
        assert len(ids) == len(set(ids)) == 2
        assert view.messages[-1].content == "Hi"
        assert view.messages[-1].is_streaming

        gate.set()
        await handle.wait()

        view = await controller.view(alice, handle.thread_id)
        assert view.phase == "idle"
        assert not view.is_loading
        assert view.messages[-1].content == "Hi there"
        assert not view.messages[-1].is_streaming

    @pytest.mark.asyncio
    async def test_view_state_is_dropped_once_idle(self, controller, provider, alice):
        gate = asyncio.Event()
        provider.queue(text("Hi"), gate)
        handle = await controller.send(alice, "Hello there")
        await until(lambda: handle.session.content == "Hi")

        await controller.view(alice, handle.thread_id)
        assert (alice.key, handle.thread_id) in controller._reconcilers

        gate.set()
        await handle.wait()
        await controller.view(alice, handle.thread_id)
        assert controller._reconcilers == {}

    @pytest.mark.asyncio
    async def test_other_identity_gets_not_found(self, controller, provider, alice):
        provider.queue(text("mine"))
        handle = await controller.send(alice, "private question here")
        await handle.wait()

        with pytest.raises(ThreadNotFound):
            await controller.view(Identity.anonymous("stranger"), handle.thread_id)


class TestDeriveTitle:

    @pytest.mark.parametrize("content,title", [
        ("Hello", "New Chat"),
        ("   ", "New Chat"),
        ("How do I sort lists", "How do I sort lists"),
        ("# Plan for `deploy` tomorrow morning early", "Plan for deploy tomorrow morning..."),
    ])
    def test_titles(self, content, title):
        assert derive_title(content) == title
