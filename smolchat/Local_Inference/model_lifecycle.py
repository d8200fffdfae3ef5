"""
Model lifecycle management.

Drives backend create/close for the active chat and keeps the session's
ModelLoadState in step:

    NOT_LOADED -> IN_PROGRESS -> SUCCESS | FAILURE
    SUCCESS | FAILURE -> IN_PROGRESS   (next load_model call)
"""

import asyncio
from typing import Optional

from loguru import logger

from ..DB.chat_store import PersistenceGateway
from ..Event_Handlers.session_events import AlertDialog
from ..exceptions import BackendError
from ..state.chat_models import Chat
from ..state.session_state import ModelLoadState, SessionState
from .backend import BackendHandle


class ModelLifecycleManager:
    """Loads the model of a chat into the session's backend."""

    def __init__(self, state: SessionState, backend: BackendHandle, store: PersistenceGateway):
        self._state = state
        self._backend = backend
        self._store = store
        self._lock = asyncio.Lock()

    @property
    def backend(self) -> BackendHandle:
        return self._backend

    async def load_model(self, chat: Optional[Chat] = None) -> bool:
        """
        Load the model configured for chat (defaults to the active chat).

        Returns True once the backend is ready to generate. Returns False when
        the chat has no usable model, in which case the model picker is
        requested, or when the backend fails, in which case a recoverable
        error is raised and the state ends in FAILURE.
        """
        async with self._lock:
            await self._backend.release()

            chat = chat if chat is not None else self._state.current_chat
            if chat is None:
                logger.debug("load_model called without an active chat")
                return False

            if not chat.has_model:
                logger.info(f"Chat {chat.id} has no model assigned, requesting model selection")
                self._state.show_select_model_list()
                return False

            model = self._store.get_model_from_id(chat.llm_model_id)
            if model is None:
                logger.warning(f"Model {chat.llm_model_id} of chat {chat.id} not found, requesting model selection")
                self._state.show_select_model_list()
                return False

            self._state.set_model_load_state(ModelLoadState.IN_PROGRESS)
            try:
                await self._backend.acquire(
                    model.path,
                    chat.min_p,
                    chat.temperature,
                    not chat.is_task,
                    chat.context_size,
                    system_prompt=chat.system_prompt,
                )
            except asyncio.CancelledError:
                logger.info(f"Loading model '{model.name}' was cancelled")
                self._state.set_model_load_state(ModelLoadState.NOT_LOADED)
                raise
            except BackendError as e:
                logger.error(f"Failed to load model '{model.name}' for chat {chat.id}: {e}")
                self._state.set_model_load_state(ModelLoadState.FAILURE)
                self._state.raise_recoverable_error(AlertDialog(
                    title="Error loading the model",
                    text=f"The model could not be loaded. The error message is: {e}",
                    primary_label="Change model",
                    on_primary=self._state.show_select_model_list,
                    secondary_label="Close",
                ), error=e)
                return False

            self._state.set_model_load_state(ModelLoadState.SUCCESS)
            logger.info(f"Model '{model.name}' ready for chat {chat.id}")
            return True

    async def release(self) -> None:
        """Close the backend without a follow-up load (session teardown)."""
        async with self._lock:
            await self._backend.release()
