"""
ChatSessionService: the operations the chat screen calls.

Owns the session's state, model lifecycle and generation controller, and is
the only place where chat-level actions (switching, deleting, reconfiguring)
are sequenced with a running generation.
"""

import asyncio
from typing import List, Optional, Set

from loguru import logger

from ..DB.chat_store import PersistenceGateway
from ..Event_Handlers.session_events import AlertDialog
from ..Local_Inference.model_lifecycle import ModelLifecycleManager
from ..RAG_Search.retrieval_service import RetrievalAssets, RetrievalReadiness
from ..state.chat_models import Chat, ChatMessage, UNASSIGNED_MODEL_ID
from ..state.session_state import SessionState
from .generation_controller import GenerationController, GenerationSession


class ChatSessionService:
    """Session-wide façade over state, persistence, model lifecycle and generation."""

    def __init__(self,
                 state: SessionState,
                 store: PersistenceGateway,
                 lifecycle: ModelLifecycleManager,
                 controller: GenerationController,
                 retrieval_assets: Optional[RetrievalAssets] = None):
        self.state = state
        self.store = store
        self.lifecycle = lifecycle
        self.controller = controller
        self._retrieval_assets = retrieval_assets
        self._background: Set[asyncio.Task] = set()

    @property
    def retrieval_readiness(self) -> RetrievalReadiness:
        return self.controller.prompt_builder.handle.readiness

    def load_retrieval(self, assets: Optional[RetrievalAssets] = None) -> asyncio.Task:
        """
        Start loading the retrieval assets, for sessions that did not load them
        on startup or whose load failed. Returns the loading task, which
        resolves to True once prompts can be built.
        """
        if assets is None:
            assets = self._retrieval_assets if self._retrieval_assets is not None else RetrievalAssets.from_config()
        self._retrieval_assets = assets
        return self.controller.prompt_builder.handle.start_loading(assets)

    # ==================== Queries ====================

    def get_chats(self) -> List[Chat]:
        return self.store.get_chats()

    def get_chat_messages(self, chat_id: int) -> List[ChatMessage]:
        return self.store.get_messages(chat_id)

    # ==================== Chat configuration ====================

    def update_chat_llm(self, model_id: int) -> Optional[Chat]:
        """Assign model_id to the active chat and persist it."""
        chat = self.state.current_chat
        if chat is None:
            logger.warning("update_chat_llm called without an active chat")
            return None
        chat = chat.model_copy(update={"llm_model_id": model_id})
        self.store.update_chat(chat)
        self.state.set_current_chat(chat)
        logger.info(f"Chat {chat.id} now uses model {model_id}")
        return chat

    async def update_chat(self, chat: Chat) -> asyncio.Task:
        """
        Replace the active chat with chat, persist it and reload its model.

        The reload runs in the background; the returned task resolves to the
        result of load_model.
        """
        self.controller.stop()
        await self.controller.wait()
        self.store.update_chat(chat)
        self.state.set_current_chat(chat)
        return self._spawn(self.lifecycle.load_model(chat), name=f"reload_chat_{chat.id}")

    async def load_model(self) -> bool:
        return await self.lifecycle.load_model(self.state.current_chat)

    # ==================== Generation ====================

    async def send_user_query(self, query: str) -> Optional[GenerationSession]:
        query = query.strip()
        if not query:
            logger.debug("Ignoring empty query")
            return None
        return await self.controller.start_generation(query, self.state.current_chat)

    def stop_generation(self) -> None:
        self.controller.stop()

    # ==================== Chats and models ====================

    async def switch_chat(self, chat: Chat) -> None:
        self.controller.stop()
        await self.controller.wait()
        self.state.set_current_chat(chat)
        logger.info(f"Switched to chat {chat.id} '{chat.name}'")

    async def delete_chat(self, chat: Chat) -> None:
        self.controller.stop()
        await self.controller.wait()
        self.store.delete_chat(chat)
        self.store.delete_messages(chat.id)
        self.state.set_current_chat(None)
        logger.info(f"Deleted chat {chat.id} '{chat.name}'")

    def delete_model(self, model_id: int) -> None:
        self.store.delete_model(model_id)
        chat = self.state.current_chat
        if chat is not None and chat.llm_model_id == model_id:
            chat = chat.model_copy(update={"llm_model_id": UNASSIGNED_MODEL_ID})
            self.store.update_chat(chat)
            self.state.set_current_chat(chat)
            logger.info(f"Model {model_id} deleted, chat {chat.id} has no model now")

    # ==================== Dialogs ====================

    def show_context_length_usage(self) -> None:
        chat = self.state.current_chat
        if chat is None:
            return
        self.state.raise_info(AlertDialog(
            title="Context length usage",
            text=(f"This chat has used {chat.context_size_consumed} tokens "
                  f"of its {chat.context_size} token context."),
            primary_label="Close",
        ))

    def show_select_model_list(self) -> None:
        self.state.show_select_model_list()

    def hide_select_model_list(self) -> None:
        self.state.hide_select_model_list()

    def show_more_options(self) -> None:
        self.state.show_more_options()

    def hide_more_options(self) -> None:
        self.state.hide_more_options()

    def show_task_list_bottom_list(self) -> None:
        self.state.show_task_list_bottom_list()

    def hide_task_list_bottom_list(self) -> None:
        self.state.hide_task_list_bottom_list()

    # ==================== Teardown ====================

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def aclose(self) -> None:
        """Stop generation, finish background work and release the backend."""
        try:
            await self.controller.aclose()
            if self._background:
                results = await asyncio.gather(*self._background, return_exceptions=True)
                for result in results:
                    if isinstance(result, Exception):
                        logger.opt(exception=result).warning("Background task failed during shutdown")
        finally:
            await self.lifecycle.release()
        logger.info("Chat session closed")
