"""
Shared pytest fixtures for Threadline tests.

Provides:
- A temporary SQLite database per test
- A scripted model provider (deltas, pauses and failures on demand)
- Identities, the persistence bridge, the session manager and the controller
"""

import asyncio
from typing import Any, Callable, List, Sequence, Tuple

import pytest
import pytest_asyncio

from threadline.config import settings
from threadline.database import build_engine, build_session_factory, init_db
from threadline.schemas.message import ChatMessage, DeltaType, GenerationOptions, StreamDelta
from threadline.schemas.quota import Identity
from threadline.services import (
    ChatController,
    InMemoryQuotaStore,
    PersistenceBridge,
    QuotaGate,
    QuotaPolicy,
    SessionManager,
)
from threadline.utils.ids import provisional_id


# ============================================================================
# Delta helpers
# ============================================================================

def text(content: str) -> StreamDelta:
    return StreamDelta(type=DeltaType.TEXT, content=content)


def reasoning(content: str) -> StreamDelta:
    return StreamDelta(type=DeltaType.REASONING, content=content)


def tool_call(call_id: str, name: str, state: str = "partial-call", args: Any = None) -> StreamDelta:
    return StreamDelta(type=DeltaType.TOOL_CALL, tool_call_id=call_id, tool_name=name, state=state, args=args)


def tool_result(call_id: str, name: str, result: Any) -> StreamDelta:
    return StreamDelta(type=DeltaType.TOOL_RESULT, tool_call_id=call_id, tool_name=name, result=result, state="result")


def done(finish_reason: str = "stop", token_count: int = 0) -> StreamDelta:
    return StreamDelta(type=DeltaType.DONE, finish_reason=finish_reason, token_count=token_count)


class ScriptedProvider:
    """Model provider that replays queued scripts.

    A script item is a StreamDelta (yielded), an asyncio.Event (waited on) or
    an exception (raised). Each ``stream`` call takes the next script.
    """

    def __init__(self):
        self.scripts: List[List[Any]] = []
        self.calls: List[Tuple[List[ChatMessage], GenerationOptions]] = []

    def queue(self, *items: Any) -> None:
        self.scripts.append(list(items))

    async def stream(self, history: Sequence[ChatMessage], options: GenerationOptions):
        self.calls.append((list(history), options))
        script = self.scripts.pop(0) if self.scripts else [text("ok")]
        for item in script:
            if isinstance(item, asyncio.Event):
                await item.wait()
            elif isinstance(item, BaseException):
                raise item
            else:
                yield item


async def until(predicate: Callable[[], bool], attempts: int = 500) -> None:
    """Let the event loop run until ``predicate`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


async def seed_thread(persistence: PersistenceBridge, identity: Identity, content: str = "Hello"):
    """Create a thread holding one user message; returns (thread_id, history)."""
    thread = await persistence.create_thread(identity)
    user = await persistence.append_message(
        thread.id, ChatMessage(id=provisional_id(), role="user", content=content), identity
    )
    return thread.id, [user]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def no_retry_backoff(monkeypatch):
    monkeypatch.setattr(settings, "PERSIST_RETRY_BACKOFF", 0.0)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def persistence(session_factory):
    return PersistenceBridge(session_factory)


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def manager(provider, persistence):
    return SessionManager(provider, persistence, thinking_models=["thinker-1"])


@pytest.fixture
def quota_policy():
    return QuotaPolicy(anonymous_daily_limit=10, plan_monthly_limits={"free": 25, "pro": 1500, "unlimited": None})


@pytest.fixture
def quota_gate(quota_policy):
    return QuotaGate(InMemoryQuotaStore(quota_policy), fail_open=True)


@pytest.fixture
def controller(persistence, quota_gate, manager):
    return ChatController(persistence, quota_gate, manager, max_input_chars=2000)


@pytest.fixture
def alice():
    return Identity.user("alice")


@pytest.fixture
def guest():
    return Identity.anonymous("anon-session-1")
