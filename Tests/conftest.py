"""
Root conftest.py for shared test fixtures and configuration.
Provides fake collaborators and a fully wired in-memory chat session.
"""

import asyncio
import shutil
import sys
import tempfile
import threading
from pathlib import Path
from typing import Iterator, List, Optional

import pytest
import pytest_asyncio

# Add project root to Python path for consistent imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from smolchat.Chat.chat_session import ChatSessionService
from smolchat.Chat.generation_controller import GenerationController
from smolchat.DB.chat_store import SQLiteChatStore
from smolchat.Event_Handlers.event_channel import SessionEventChannel
from smolchat.Local_Inference.backend import BackendHandle, InferenceBackend
from smolchat.Local_Inference.model_lifecycle import ModelLifecycleManager
from smolchat.RAG_Search.prompt_builder import RetrievalPromptBuilder
from smolchat.RAG_Search.retrieval_service import (
    RetrievalAssets,
    RetrievalPrompt,
    RetrievalService,
    RetrievalServiceHandle,
)
from smolchat.state.chat_models import Chat, LLMModel
from smolchat.state.session_state import SessionState


# ========== Fakes ==========

class FakeBackend(InferenceBackend):
    """
    In-process backend that replays a fixed list of fragments.

    gate, when set, makes every fragment after the first wait until the
    test releases it, so a test can act while a stream is in flight.
    """

    def __init__(self, fragments: Optional[List[str]] = None):
        self.fragments = list(fragments if fragments is not None else ["4"])
        self.create_error: Optional[Exception] = None
        self.system_prompt_error: Optional[Exception] = None
        self.stream_error: Optional[Exception] = None
        self.gate: Optional[threading.Event] = None
        self.context_used = 42
        self.speed = 12.5
        self.loaded = False
        self.calls: List[tuple] = []

    def create(self, model_path, min_p, temperature, persist_history, context_size):
        self.calls.append(("create", model_path, min_p, temperature, persist_history, context_size))
        if self.create_error is not None:
            raise self.create_error
        self.loaded = True

    def add_system_prompt(self, text):
        self.calls.append(("system_prompt", text))
        if self.system_prompt_error is not None:
            raise self.system_prompt_error

    def generate(self, prompt) -> Iterator[str]:
        self.calls.append(("generate", prompt))
        return self._replay(list(self.fragments))

    def _replay(self, fragments: List[str]) -> Iterator[str]:
        for index, fragment in enumerate(fragments):
            if index > 0 and self.gate is not None:
                self.gate.wait(timeout=5)
            yield fragment
        if self.stream_error is not None:
            raise self.stream_error

    def context_length_used(self):
        return self.context_used

    def generation_speed(self):
        return self.speed

    def close(self):
        self.calls.append(("close",))
        self.loaded = False

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


class FakeRetrievalService(RetrievalService):
    """Returns three fixed contexts for any query."""

    def __init__(self, contexts: Optional[List[str]] = None):
        self.contexts = list(contexts if contexts is not None else ["alpha", "beta", "gamma"])
        self.load_error: Optional[Exception] = None
        self.loaded = False
        self.queries: List[str] = []

    def load(self, assets):
        if self.load_error is not None:
            raise self.load_error
        self.loaded = True

    def get_prompt(self, query):
        self.queries.append(query)
        return RetrievalPrompt(
            query=query,
            contexts=list(self.contexts),
            user_message=f"[grounded] {query}",
        )


class EventRecorder:
    """Collects every event published on a channel."""

    def __init__(self, channel: SessionEventChannel):
        self.events = []
        self.unsubscribe = channel.subscribe(self.events.append)

    def of_type(self, *event_types):
        return [event for event in self.events if isinstance(event, event_types)]

    def names(self) -> List[str]:
        return [type(event).__name__ for event in self.events]

    def clear(self):
        self.events.clear()


async def wait_until(predicate, timeout: float = 5.0):
    """Poll predicate on the event loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ========== Path and File System Fixtures ==========

@pytest.fixture
def isolated_temp_dir():
    """Create an isolated temporary directory that's always cleaned up."""
    temp_dir = tempfile.mkdtemp(prefix="smolchat_test_")
    temp_path = Path(temp_dir)
    yield temp_path
    if temp_path.exists():
        shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def retrieval_assets(isolated_temp_dir):
    return RetrievalAssets(
        chunks_path=isolated_temp_dir / "chunks.csv",
        vectors_path=isolated_temp_dir / "vectors.csv",
        embedding_model=isolated_temp_dir / "embedding_model",
    )


# ========== Database Fixtures ==========

@pytest.fixture
def store():
    chat_store = SQLiteChatStore(":memory:", chat_defaults={"name": "Default chat"})
    yield chat_store
    chat_store.close()


@pytest.fixture
def model(store) -> LLMModel:
    return store.add_model(LLMModel(name="smollm2-360m", path="/models/smollm2-360m.gguf"))


@pytest.fixture
def chat(store, model) -> Chat:
    return store.add_chat(Chat(name="Assistant", llm_model_id=model.id, system_prompt="Be brief."))


# ========== Session Fixtures ==========

@pytest.fixture
def state() -> SessionState:
    return SessionState()


@pytest.fixture
def recorder(state) -> EventRecorder:
    return EventRecorder(state.channel)


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def fake_retrieval() -> FakeRetrievalService:
    return FakeRetrievalService()


@pytest.fixture
def lifecycle(state, fake_backend, store) -> ModelLifecycleManager:
    return ModelLifecycleManager(state, BackendHandle(fake_backend), store)


@pytest_asyncio.fixture
async def retrieval_handle(fake_retrieval, retrieval_assets) -> RetrievalServiceHandle:
    handle = RetrievalServiceHandle(fake_retrieval)
    assert await handle.initialize(retrieval_assets)
    return handle


@pytest_asyncio.fixture
async def controller(state, lifecycle, retrieval_handle, store):
    generation = GenerationController(state, lifecycle, RetrievalPromptBuilder(retrieval_handle), store)
    yield generation
    await generation.aclose()


@pytest_asyncio.fixture
async def session_service(state, store, lifecycle, controller, chat) -> ChatSessionService:
    service = ChatSessionService(state, store, lifecycle, controller)
    state.set_current_chat(chat)
    yield service
    await service.aclose()
