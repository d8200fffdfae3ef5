# event_channel.py
# Description: Ordered notification channel for session events.
#
# Imports
from collections import deque
from typing import Callable, Deque, List
#
# Third-party Imports
from loguru import logger
#
# Local Imports
from .session_events import SessionEvent
#
########################################################################################################################
#
# Classes:

EventCallback = Callable[[SessionEvent], None]


class SessionEventChannel:
    """
    Delivers session events to subscribers in a single total order.

    Events get a monotonically increasing sequence number when published.
    A subscriber that publishes while being notified does not jump the queue:
    its event is delivered after the current one has reached every subscriber.
    Publishing is expected to happen on the event loop thread only.
    """

    def __init__(self) -> None:
        self._subscribers: List[EventCallback] = []
        self._pending: Deque[SessionEvent] = deque()
        self._sequence = 0
        self._dispatching = False

    @property
    def last_sequence(self) -> int:
        return self._sequence

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Registers callback and returns a function that removes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: SessionEvent) -> None:
        self._sequence += 1
        event.sequence = self._sequence
        self._pending.append(event)
        if self._dispatching:
            return

        self._dispatching = True
        try:
            while self._pending:
                current = self._pending.popleft()
                for callback in list(self._subscribers):
                    try:
                        callback(current)
                    except Exception as e:
                        # A broken observer must not stall the session
                        logger.opt(exception=e).error(
                            f"Subscriber {callback!r} failed on {type(current).__name__} #{current.sequence}"
                        )
        finally:
            self._dispatching = False

#
# End of event_channel.py
########################################################################################################################
