"""Session events and the ordered channel that delivers them."""

from .event_channel import SessionEventChannel
from .session_events import (
    AlertDialog,
    SessionEvent,
    ChatChanged,
    ModelLoadStateChanged,
    GeneratingChanged,
    PartialResponseReset,
    PartialResponseAppended,
    PartialResponseReplaced,
    GenerationMetricsRecorded,
    DialogVisibilityChanged,
    RecoverableErrorRaised,
    InfoDialogRaised,
    SELECT_MODEL_DIALOG,
    MORE_OPTIONS_POPUP,
    TASK_LIST,
)
from .textual_bridge import TextualEventBridge

__all__ = [
    'SessionEventChannel',
    'TextualEventBridge',
    'AlertDialog',
    'SessionEvent',
    'ChatChanged',
    'ModelLoadStateChanged',
    'GeneratingChanged',
    'PartialResponseReset',
    'PartialResponseAppended',
    'PartialResponseReplaced',
    'GenerationMetricsRecorded',
    'DialogVisibilityChanged',
    'RecoverableErrorRaised',
    'InfoDialogRaised',
    'SELECT_MODEL_DIALOG',
    'MORE_OPTIONS_POPUP',
    'TASK_LIST',
]
