"""UI-facing events emitted by the session layer."""

import logging
from collections import defaultdict
from collections.abc import Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


class SessionEvent(Enum):
    """Events the presentation layer can subscribe to."""

    MESSAGE_APPENDED = "message_appended"
    MESSAGE_UPDATED = "message_updated"
    LISTENING_CHANGED = "listening_changed"
    SPEAKING_CHANGED = "speaking_changed"
    STATE_CHANGED = "state_changed"
    ERROR = "error"


class EventEmitter:
    """Synchronous publish/subscribe for session events.

    Listener exceptions are logged and never reach the emitter.
    """

    def __init__(self) -> None:
        self._listeners: dict[SessionEvent, list[Listener]] = defaultdict(list)

    def on(self, event: SessionEvent, listener: Listener) -> None:
        """Subscribe a listener to an event."""
        self._listeners[event].append(listener)

    def off(self, event: SessionEvent, listener: Listener) -> None:
        """Unsubscribe a listener; unknown listeners are ignored."""
        try:
            self._listeners[event].remove(listener)
        except ValueError:
            pass

    def emit(self, event: SessionEvent, payload: Any = None) -> None:
        """Deliver payload to every listener of event, in subscription order."""
        for listener in list(self._listeners[event]):
            try:
                listener(payload)
            except Exception:
                logger.exception("Session event listener failed", extra={"event": event.value})
