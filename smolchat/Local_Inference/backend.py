# backend.py
# Description: Inference backend interface and the handle that owns a loaded backend.
#
# Imports
import asyncio
from abc import ABC, abstractmethod
from typing import AsyncIterator, Iterator
#
# Third-party Libraries
from loguru import logger
#
# Local Imports
from ..exceptions import BackendError, BackendLoadError
from ..Utils.cancellation import CancellationToken
#
########################################################################################################################
#
# Classes:

class InferenceBackend(ABC):
    """
    A native engine holding at most one loaded model.

    All methods are blocking; BackendHandle runs them off the event loop.
    """

    @abstractmethod
    def create(self, model_path: str, min_p: float, temperature: float,
               persist_history: bool, context_size: int) -> None:
        """Load the model file. Raises BackendError on failure."""

    @abstractmethod
    def add_system_prompt(self, text: str) -> None:
        pass

    @abstractmethod
    def generate(self, prompt: str) -> Iterator[str]:
        """Return a finite, non-restartable iterator of text fragments."""

    @abstractmethod
    def context_length_used(self) -> int:
        pass

    @abstractmethod
    def generation_speed(self) -> float:
        """Tokens per second of the last generation."""

    @abstractmethod
    def close(self) -> None:
        """Release the model. Must be safe to call when nothing is loaded."""


_EXHAUSTED = object()


class BackendHandle:
    """
    Exclusive owner of one InferenceBackend.

    Loading always closes the previous instance first, and a load that fails
    half-way is closed again before the error propagates, so no exit path
    leaves a model resident that the session does not know about.
    """

    def __init__(self, backend: InferenceBackend):
        self._backend = backend
        self._loaded = False
        self._lock = asyncio.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    async def acquire(self, model_path: str, min_p: float, temperature: float,
                      persist_history: bool, context_size: int,
                      system_prompt: str = "") -> None:
        async with self._lock:
            await self._close()
            try:
                await asyncio.to_thread(
                    self._backend.create, model_path, min_p, temperature, persist_history, context_size
                )
                self._loaded = True
                logger.info(f"Model loaded from {model_path}")
                if system_prompt:
                    await asyncio.to_thread(self._backend.add_system_prompt, system_prompt)
                    logger.debug("System prompt added")
            except Exception as e:
                logger.warning(f"Loading {model_path} failed: {e}")
                await self._close()
                if isinstance(e, BackendLoadError):
                    raise
                raise BackendLoadError(str(e) or type(e).__name__) from e

    async def release(self) -> None:
        async with self._lock:
            await self._close()

    async def _close(self) -> None:
        await asyncio.to_thread(self._backend.close)
        if self._loaded:
            logger.debug("Backend released")
        self._loaded = False

    async def stream(self, prompt: str, token: CancellationToken) -> AsyncIterator[str]:
        """
        Yield fragments of the backend's response to prompt.

        Each step of the underlying iterator runs in a worker thread; the
        token is checked before and after every step and a cancelled stream
        ends without yielding the fragment that was in flight.
        """
        if not self._loaded:
            raise BackendError("No model is loaded")

        iterator = await asyncio.to_thread(lambda: iter(self._backend.generate(prompt)))
        try:
            while not token.is_cancelled:
                fragment = await asyncio.to_thread(next, iterator, _EXHAUSTED)
                if fragment is _EXHAUSTED or token.is_cancelled:
                    break
                yield fragment
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                try:
                    close()
                except ValueError:
                    # Still running in a worker thread; it finishes on its own
                    logger.debug("Backend iterator busy, left to finish in its thread")

    def context_length_used(self) -> int:
        return self._backend.context_length_used()

    def generation_speed(self) -> float:
        return self._backend.generation_speed()

    async def __aenter__(self) -> "BackendHandle":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()

#
# End of backend.py
########################################################################################################################
