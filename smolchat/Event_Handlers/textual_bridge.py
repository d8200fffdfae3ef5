"""Forwards session events into a Textual app or widget."""

from typing import Callable, Optional, Tuple, Type

from loguru import logger
from textual.message_pump import MessagePump

from .event_channel import SessionEventChannel
from .session_events import SessionEvent


class TextualEventBridge:
    """
    Posts every session event to a Textual message pump.

    Handlers are written the usual Textual way, e.g.
    ``on_partial_response_appended`` or ``@on(PartialResponseAppended)``.
    Textual processes a pump's queue in order, so the session's total order
    is preserved on the UI side.
    """

    def __init__(self,
                 channel: SessionEventChannel,
                 target: MessagePump,
                 event_types: Optional[Tuple[Type[SessionEvent], ...]] = None):
        self._target = target
        self._event_types = event_types
        self._unsubscribe: Optional[Callable[[], None]] = channel.subscribe(self._forward)

    def _forward(self, event: SessionEvent) -> None:
        if self._event_types and not isinstance(event, self._event_types):
            return
        if not self._target.post_message(event):
            logger.debug(f"Target {self._target!r} refused {type(event).__name__} #{event.sequence}")

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
