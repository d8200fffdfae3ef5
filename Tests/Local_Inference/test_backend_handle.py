"""Tests for BackendHandle: exclusive ownership and cancellable streaming."""

import pytest

from conftest import FakeBackend
from smolchat.Local_Inference.backend import BackendHandle
from smolchat.Utils.cancellation import CancellationToken
from smolchat.exceptions import BackendError, BackendLoadError


@pytest.mark.asyncio
async def test_acquire_closes_then_creates():
    backend = FakeBackend()
    handle = BackendHandle(backend)

    await handle.acquire("/m.gguf", 0.05, 0.7, True, 4096, system_prompt="hi")

    assert backend.call_names() == ["close", "create", "system_prompt"]
    assert handle.is_loaded is True


@pytest.mark.asyncio
async def test_acquire_wraps_errors_and_releases():
    backend = FakeBackend()
    backend.create_error = MemoryError("too big")
    handle = BackendHandle(backend)

    with pytest.raises(BackendLoadError, match="too big"):
        await handle.acquire("/m.gguf", 0.1, 0.8, True, 2048)

    assert handle.is_loaded is False
    assert backend.call_names()[-1] == "close"


@pytest.mark.asyncio
async def test_backend_load_error_propagates_unchanged():
    backend = FakeBackend()
    error = BackendLoadError("binary missing")
    backend.create_error = error
    handle = BackendHandle(backend)

    with pytest.raises(BackendLoadError) as excinfo:
        await handle.acquire("/m.gguf", 0.1, 0.8, True, 2048)
    assert excinfo.value is error


@pytest.mark.asyncio
async def test_stream_yields_all_fragments():
    backend = FakeBackend(["a", "b", "c"])
    handle = BackendHandle(backend)
    await handle.acquire("/m.gguf", 0.1, 0.8, True, 2048)

    fragments = [fragment async for fragment in handle.stream("q", CancellationToken())]

    assert fragments == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_stream_stops_when_token_cancelled():
    backend = FakeBackend(["a", "b", "c"])
    handle = BackendHandle(backend)
    await handle.acquire("/m.gguf", 0.1, 0.8, True, 2048)
    token = CancellationToken()

    fragments = []
    async for fragment in handle.stream("q", token):
        fragments.append(fragment)
        token.cancel()

    assert fragments == ["a"]


@pytest.mark.asyncio
async def test_stream_requires_loaded_model():
    handle = BackendHandle(FakeBackend())

    with pytest.raises(BackendError):
        async for _ in handle.stream("q", CancellationToken()):
            pass


@pytest.mark.asyncio
async def test_async_context_manager_releases():
    backend = FakeBackend()
    async with BackendHandle(backend) as handle:
        await handle.acquire("/m.gguf", 0.1, 0.8, True, 2048)
        assert backend.loaded is True

    assert backend.loaded is False
