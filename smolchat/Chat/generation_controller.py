"""
Generation controller.

Runs one query end-to-end as an asyncio task: load the chat's model, build
the grounded prompt, stream the response into the session's partial buffer
and persist the finished turn.

    Idle -> Loading -> Idle                      (model not loaded)
    Idle -> Loading -> PromptBuilding -> Streaming -> Completed | Cancelled | Errored

Cancellation is cooperative. stop() flips the running task's token and the
task checks it after every await, so once stop() returns the task makes no
further writes to the session.
"""

import asyncio
import itertools
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from loguru import logger

from ..DB.chat_store import PersistenceGateway
from ..Event_Handlers.session_events import AlertDialog
from ..exceptions import GenerationError
from ..Local_Inference.model_lifecycle import ModelLifecycleManager
from ..logging_config import truncate_query
from ..RAG_Search.prompt_builder import RetrievalPromptBuilder
from ..state.chat_models import Chat
from ..state.session_state import SessionState
from ..Utils.cancellation import CancellationToken
from .think_tags import quote_think_spans


class GenerationOutcome(Enum):
    NOT_STARTED = "not_started"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


@dataclass
class GenerationResult:
    outcome: GenerationOutcome
    chat_id: Optional[int] = None
    response: Optional[str] = None
    error: Optional[str] = None


_session_ids = itertools.count(1)


@dataclass
class GenerationSession:
    """The single live generation of a session."""
    chat_id: int
    token: CancellationToken = field(default_factory=CancellationToken)
    id: int = field(default_factory=lambda: next(_session_ids))
    task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self.task is not None and not self.task.done()


class GenerationController:
    """Starts, stops and retires generation tasks for a session."""

    def __init__(self,
                 state: SessionState,
                 lifecycle: ModelLifecycleManager,
                 prompt_builder: RetrievalPromptBuilder,
                 store: PersistenceGateway):
        self._state = state
        self._lifecycle = lifecycle
        self._prompt_builder = prompt_builder
        self._store = store
        self._session: Optional[GenerationSession] = None
        self._start_lock = asyncio.Lock()

    @property
    def prompt_builder(self) -> RetrievalPromptBuilder:
        return self._prompt_builder

    @property
    def session(self) -> Optional[GenerationSession]:
        return self._session

    @property
    def is_running(self) -> bool:
        return self._session is not None and self._session.is_running

    async def start_generation(self, query: str, chat: Optional[Chat] = None) -> Optional[GenerationSession]:
        """
        Start answering query in chat (defaults to the active chat).

        A generation that is still running is stopped and awaited first.
        Returns the new session, or None when there is no chat to answer in.

        Raises:
            GenerationError: if query is blank.
        """
        if not query.strip():
            raise GenerationError("Cannot answer an empty query")
        async with self._start_lock:
            if self.is_running:
                logger.info("Generation already running, stopping it before starting a new one")
                self.stop()
                await self.wait()

            chat = chat if chat is not None else self._state.current_chat
            if chat is None:
                logger.warning("start_generation called without an active chat")
                return None

            self._state.clear_partial_response()
            session = GenerationSession(chat_id=chat.id)
            session.task = asyncio.create_task(
                self._run(session, chat, query), name=f"generation_{session.id}"
            )
            self._session = session
            logger.debug(f"Generation {session.id} started for chat {chat.id} [query: '{truncate_query(query)}']")
            return session

    def stop(self) -> None:
        """Cancel the running generation. Safe to call at any time, any number of times."""
        session = self._session
        if session is not None and session.is_running and not session.token.is_cancelled:
            logger.info(f"Stopping generation {session.id}")
            session.token.cancel()
        self._retire_state()

    async def wait(self) -> Optional[GenerationResult]:
        """
        Wait for the current generation task to retire and return its result.

        A task cancelled from outside the controller (task.cancel(), loop
        shutdown) is reported as CANCELLED rather than raised.
        """
        session = self._session
        if session is None or session.task is None:
            return None
        try:
            return await asyncio.shield(session.task)
        except asyncio.CancelledError:
            if not session.task.cancelled():
                # The waiter itself was cancelled
                raise
            session.token.cancel()
            self._retire_state()
            return GenerationResult(GenerationOutcome.CANCELLED, session.chat_id)

    async def aclose(self) -> None:
        self.stop()
        try:
            await self.wait()
        finally:
            self._session = None

    # ==================== Task body ====================

    async def _run(self, session: GenerationSession, chat: Chat, query: str) -> GenerationResult:
        token = session.token
        cancelled = GenerationResult(GenerationOutcome.CANCELLED, chat.id)

        try:
            loaded = await self._lifecycle.load_model(chat)
        except asyncio.CancelledError:
            return self._cancelled_from_outside(session, chat)
        except Exception as e:
            logger.opt(exception=e).error(f"Generation {session.id} could not load the model")
            return self._fail(session, chat, e)
        if token.is_cancelled:
            return cancelled
        if not loaded:
            logger.info(f"Generation {session.id} not started, model for chat {chat.id} is not loaded")
            return GenerationResult(GenerationOutcome.NOT_STARTED, chat.id)

        try:
            chat = chat.model_copy(update={"date_used": datetime.now()})
            self._store.update_chat(chat)
            self._sync_current_chat(chat)
            if chat.is_task:
                self._store.delete_messages(chat.id)

            self._state.set_generating(True)
            prompt = await self._prompt_builder.build_prompt(query)
            if token.is_cancelled:
                return cancelled

            self._store.add_user_message(chat.id, prompt.provenance_message)
            self._state.clear_partial_response()

            started = time.monotonic()
            backend = self._lifecycle.backend
            async with aclosing(backend.stream(prompt.user_message, token)) as fragments:
                async for fragment in fragments:
                    if token.is_cancelled:
                        break
                    self._state.append_partial_response(fragment)
            if token.is_cancelled:
                return cancelled
            elapsed = time.monotonic() - started

            response = quote_think_spans(self._state.partial_response)
            self._state.replace_partial_response(response)
            self._store.add_assistant_message(chat.id, response)

            chat = chat.model_copy(update={"context_size_consumed": backend.context_length_used()})
            self._store.update_chat(chat)
            self._sync_current_chat(chat)

            self._state.record_generation_metrics(backend.generation_speed(), int(elapsed))
            self._state.set_generating(False)
            logger.info(f"Generation {session.id} completed in {elapsed:.2f}s")
            return GenerationResult(GenerationOutcome.COMPLETED, chat.id, response=response)

        except asyncio.CancelledError:
            return self._cancelled_from_outside(session, chat)
        except Exception as e:
            if token.is_cancelled:
                logger.debug(f"Generation {session.id} failed after it was stopped: {e}")
                return cancelled
            logger.opt(exception=e).error(f"Generation {session.id} failed")
            return self._fail(session, chat, e)

    def _cancelled_from_outside(self, session: GenerationSession, chat: Chat) -> GenerationResult:
        if not session.token.is_cancelled:
            logger.info(f"Generation {session.id} task was cancelled")
            session.token.cancel()
            self._retire_state()
        return GenerationResult(GenerationOutcome.CANCELLED, chat.id)

    def _retire_state(self) -> None:
        if self._state.is_generating:
            self._state.set_generating(False)
        if self._state.partial_fragments:
            self._state.clear_partial_response()

    def _fail(self, session: GenerationSession, chat: Chat, error: Exception) -> GenerationResult:
        message = str(error) or type(error).__name__
        if not isinstance(error, GenerationError):
            wrapped = GenerationError(message)
            wrapped.__cause__ = error
            error = wrapped
        self._state.clear_partial_response()
        self._state.set_generating(False)
        self._state.raise_recoverable_error(AlertDialog(
            title="An error occurred",
            text=f"The app is unable to process the query. The error message is: {message}",
            primary_label="Change model",
            on_primary=self._state.show_select_model_list,
            secondary_label="Close",
        ), error=error)
        return GenerationResult(GenerationOutcome.ERRORED, chat.id, error=message)

    def _sync_current_chat(self, chat: Chat) -> None:
        current = self._state.current_chat
        if current is not None and current.id == chat.id:
            self._state.set_current_chat(chat)
