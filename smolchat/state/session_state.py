"""
Session state management.

SessionState is the single observable container the model lifecycle, the
generation controller and the UI share. Every setter publishes an event on
the session's channel, so observers see writes in the order they were made.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ..Event_Handlers.event_channel import SessionEventChannel
from ..Event_Handlers.session_events import (
    AlertDialog,
    ChatChanged,
    DialogVisibilityChanged,
    GeneratingChanged,
    GenerationMetricsRecorded,
    InfoDialogRaised,
    ModelLoadStateChanged,
    PartialResponseAppended,
    PartialResponseReplaced,
    PartialResponseReset,
    RecoverableErrorRaised,
    SELECT_MODEL_DIALOG,
    MORE_OPTIONS_POPUP,
    TASK_LIST,
)
from ..exceptions import SmolChatError
from .chat_models import Chat


class ModelLoadState(Enum):
    """Lifecycle of the backend model for the active chat."""
    NOT_LOADED = "not_loaded"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class SessionState:
    """Observable state of one chat session."""

    channel: SessionEventChannel = field(default_factory=SessionEventChannel)

    current_chat: Optional[Chat] = None
    model_load_state: ModelLoadState = ModelLoadState.NOT_LOADED
    is_generating: bool = False

    # Streaming buffer, append-only while a response streams
    partial_fragments: List[str] = field(default_factory=list)

    # Metrics of the last completed generation
    generation_speed: Optional[float] = None
    generation_time_secs: Optional[int] = None

    # UI requests
    show_select_model_dialog: bool = False
    show_more_options_popup: bool = False
    show_task_list: bool = False

    @property
    def partial_response(self) -> str:
        return "".join(self.partial_fragments)

    # ==================== Chat ====================

    def set_current_chat(self, chat: Optional[Chat]) -> None:
        self.current_chat = chat
        self.channel.publish(ChatChanged(chat))

    # ==================== Lifecycle ====================

    def set_model_load_state(self, state: ModelLoadState) -> None:
        previous = self.model_load_state
        self.model_load_state = state
        self.channel.publish(ModelLoadStateChanged(previous, state))

    def set_generating(self, is_generating: bool) -> None:
        self.is_generating = is_generating
        self.channel.publish(GeneratingChanged(is_generating))

    # ==================== Partial Response ====================

    def clear_partial_response(self) -> None:
        self.partial_fragments = []
        self.channel.publish(PartialResponseReset())

    def append_partial_response(self, fragment: str) -> None:
        self.partial_fragments.append(fragment)
        self.channel.publish(PartialResponseAppended(fragment, self.partial_response))

    def replace_partial_response(self, text: str) -> None:
        self.partial_fragments = [text]
        self.channel.publish(PartialResponseReplaced(text))

    def record_generation_metrics(self, tokens_per_second: Optional[float], elapsed_seconds: Optional[int]) -> None:
        self.generation_speed = tokens_per_second
        self.generation_time_secs = elapsed_seconds
        self.channel.publish(GenerationMetricsRecorded(tokens_per_second, elapsed_seconds))

    # ==================== Dialogs ====================

    def raise_recoverable_error(self, alert: AlertDialog, error: Optional[SmolChatError] = None) -> None:
        self.channel.publish(RecoverableErrorRaised(alert, error))

    def raise_info(self, alert: AlertDialog) -> None:
        self.channel.publish(InfoDialogRaised(alert))

    def _set_dialog(self, attribute: str, dialog: str, visible: bool) -> None:
        setattr(self, attribute, visible)
        self.channel.publish(DialogVisibilityChanged(dialog, visible))

    def show_select_model_list(self) -> None:
        self._set_dialog("show_select_model_dialog", SELECT_MODEL_DIALOG, True)

    def hide_select_model_list(self) -> None:
        self._set_dialog("show_select_model_dialog", SELECT_MODEL_DIALOG, False)

    def show_more_options(self) -> None:
        self._set_dialog("show_more_options_popup", MORE_OPTIONS_POPUP, True)

    def hide_more_options(self) -> None:
        self._set_dialog("show_more_options_popup", MORE_OPTIONS_POPUP, False)

    def show_task_list_bottom_list(self) -> None:
        self._set_dialog("show_task_list", TASK_LIST, True)

    def hide_task_list_bottom_list(self) -> None:
        self._set_dialog("show_task_list", TASK_LIST, False)
