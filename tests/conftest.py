"""
Pytest Configuration and Fixtures

Provides fixtures for:
- In-memory session store with a controllable clock
- Scripted completion sources (no network)
- Event recorder standing in for a WebSocket
- JWT tokens and a FastAPI app wired to the fakes
"""
# Settings are read at import time; point them at the offline stack first
import os
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-for-testing-only")
os.environ.setdefault("SESSION_STORE_BACKEND", "memory")
os.environ.setdefault("LLM_PROVIDER", "rule_based")

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import pytest

from discovery_ai.agents.chat_controller import ChatSessionController, ConnectionContext, SessionLockRegistry
from discovery_ai.api.auth import TokenVerifier, create_access_token
from discovery_ai.interfaces.session_store import InMemorySessionStore
from discovery_ai.llm.completion_source import CompletionFragment, CompletionSource
from discovery_ai.llm.prompts import PromptContext
from discovery_ai.llm.rule_based_source import RuleBasedCompletionSource
from discovery_ai.main import create_app

TEST_SECRET = "test-jwt-secret-for-testing-only"


# ============================================================================
# Fakes
# ============================================================================

class FakeClock:
    """Settable UTC clock"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ScriptedCompletionSource(CompletionSource):
    """
    Replays one script per call.

    A script is a sequence of text fragments; an Exception instance in the
    sequence is raised at that point. The completion flag is sent after the
    last fragment.
    """

    name = "scripted"

    def __init__(self, scripts: Sequence[Sequence[Union[str, Exception]]] = ()):
        self.scripts: List[Sequence[Union[str, Exception]]] = list(scripts)
        self.prompts: List[PromptContext] = []

    async def stream(self, session_id: str, prompt: PromptContext):
        self.prompts.append(prompt)
        script = self.scripts.pop(0) if self.scripts else ["Anotado!"]
        for item in script:
            if isinstance(item, Exception):
                raise item
            yield CompletionFragment(text=item)
        yield CompletionFragment(is_complete=True)


class GatedCompletionSource(CompletionSource):
    """Sends one fragment, then holds the stream open until released"""

    name = "gated"

    def __init__(self, text: str = "Anotado! Qual é o seu orçamento?"):
        self.text = text
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def stream(self, session_id: str, prompt: PromptContext):
        yield CompletionFragment(text=self.text)
        self.started.set()
        await self.release.wait()
        yield CompletionFragment(is_complete=True)


class RecordingEmitter:
    """Collects (event, payload) pairs the controller emits"""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def __call__(self, event: str, data: Dict[str, Any]) -> None:
        self.events.append((event, data))

    def of(self, event: str) -> List[Dict[str, Any]]:
        return [data for name, data in self.events if name == event]

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def final_chunks(self) -> List[Dict[str, Any]]:
        return [data for data in self.of("chatResponse") if data["isComplete"]]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore(ttl_hours=24)


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()


@pytest.fixture
def locks() -> SessionLockRegistry:
    return SessionLockRegistry()


@pytest.fixture
def context() -> ConnectionContext:
    return ConnectionContext(user_id="user-1")


@pytest.fixture
def rule_based_controller(store, locks) -> ChatSessionController:
    """Controller driven by the offline interviewer"""
    return ChatSessionController(store, RuleBasedCompletionSource(), locks=locks)


@pytest.fixture
def token_verifier() -> TokenVerifier:
    return TokenVerifier(secret=TEST_SECRET)


@pytest.fixture
def make_token():
    def _make(user_id: str = "user-1", **kwargs) -> str:
        return create_access_token(user_id, secret=TEST_SECRET, algorithm="HS256", **kwargs)
    return _make


@pytest.fixture
def app(store, token_verifier):
    return create_app(
        store=store,
        completion_source=RuleBasedCompletionSource(),
        token_verifier=token_verifier,
    )


@pytest.fixture
async def api_client(app):
    """httpx client bound to the ASGI app"""
    from httpx import ASGITransport, AsyncClient

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def scripted_source():
    """Factory: scripted_source([["frag", "ments"], [...]])"""
    def _make(scripts: Sequence[Sequence[Union[str, Exception]]] = ()) -> ScriptedCompletionSource:
        return ScriptedCompletionSource(scripts)
    return _make


@pytest.fixture
def gated_source() -> GatedCompletionSource:
    return GatedCompletionSource()


@pytest.fixture
def new_emitter():
    """Factory for extra emitters (second tab, reconnect)"""
    return RecordingEmitter
