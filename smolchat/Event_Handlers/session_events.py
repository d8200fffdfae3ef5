"""
Textual Message classes for session events.

Every observable change to the session state is published as one of these
messages, in the order it was issued, through the session's event channel.
A Textual app can receive them directly through TextualEventBridge.
"""

from dataclasses import dataclass
from typing import Callable, Optional, TYPE_CHECKING

from textual.message import Message

if TYPE_CHECKING:
    from ..exceptions import SmolChatError
    from ..state.chat_models import Chat
    from ..state.session_state import ModelLoadState


# Dialog identifiers used by DialogVisibilityChanged
SELECT_MODEL_DIALOG = "select_model_list"
MORE_OPTIONS_POPUP = "more_options_popup"
TASK_LIST = "task_list"


@dataclass
class AlertDialog:
    """A dialog the UI should show: title, text and up to two actions."""
    title: str
    text: str
    primary_label: str = "Close"
    on_primary: Optional[Callable[[], None]] = None
    secondary_label: Optional[str] = None
    on_secondary: Optional[Callable[[], None]] = None


# ==================== Base Session Message ====================

class SessionEvent(Message):
    """Base class for all session messages."""
    bubble = True

    def __init__(self) -> None:
        super().__init__()
        # Assigned by the event channel on publish
        self.sequence: int = -1


# ==================== State Messages ====================

class ChatChanged(SessionEvent):
    """Posted when the active chat is replaced or cleared."""

    def __init__(self, chat: Optional["Chat"]):
        super().__init__()
        self.chat = chat


class ModelLoadStateChanged(SessionEvent):
    """Posted on every model lifecycle transition."""

    def __init__(self, previous: "ModelLoadState", state: "ModelLoadState"):
        super().__init__()
        self.previous = previous
        self.state = state


class GeneratingChanged(SessionEvent):
    """Posted when the generating flag flips."""

    def __init__(self, is_generating: bool):
        super().__init__()
        self.is_generating = is_generating


# ==================== Partial Response Messages ====================

class PartialResponseReset(SessionEvent):
    """Posted when the partial response buffer is emptied."""
    pass


class PartialResponseAppended(SessionEvent):
    """Posted for each streamed fragment, carrying the accumulated text."""

    def __init__(self, fragment: str, text: str):
        super().__init__()
        self.fragment = fragment
        self.text = text


class PartialResponseReplaced(SessionEvent):
    """Posted when the finished response replaces the streamed text."""

    def __init__(self, text: str):
        super().__init__()
        self.text = text


class GenerationMetricsRecorded(SessionEvent):
    """Posted after a completed generation with its speed and duration."""

    def __init__(self, tokens_per_second: Optional[float], elapsed_seconds: Optional[int]):
        super().__init__()
        self.tokens_per_second = tokens_per_second
        self.elapsed_seconds = elapsed_seconds


# ==================== Dialog Messages ====================

class DialogVisibilityChanged(SessionEvent):
    """Posted when a UI-request flag is toggled."""

    def __init__(self, dialog: str, visible: bool):
        super().__init__()
        self.dialog = dialog
        self.visible = visible


class RecoverableErrorRaised(SessionEvent):
    """
    Posted when an error should be shown with a way to recover from it.

    error carries the failure kind (BackendLoadError, GenerationError, ...)
    so handlers can branch on it instead of on the alert title.
    """

    def __init__(self, alert: AlertDialog, error: Optional["SmolChatError"] = None):
        super().__init__()
        self.alert = alert
        self.error = error


class InfoDialogRaised(SessionEvent):
    """Posted for informational dialogs."""

    def __init__(self, alert: AlertDialog):
        super().__init__()
        self.alert = alert
