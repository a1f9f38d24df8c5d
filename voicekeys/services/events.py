"""Events published by the dictation pipeline."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Type, Union

LOGGER = logging.getLogger("voicekeys.events")


@dataclass(frozen=True, slots=True)
class RecognizedText:
    text: str


@dataclass(frozen=True, slots=True)
class StatusChanged:
    message: str


@dataclass(frozen=True, slots=True)
class RecordingStateChanged:
    recording: bool


Event = Union[RecognizedText, StatusChanged, RecordingStateChanged]
Listener = Callable[[Event], None]


class EventBus:
    """Synchronous fan-out to subscribers; a failing listener never breaks the publisher."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: List[tuple[Type | None, Listener]] = []

    def subscribe(self, listener: Listener, event_type: Type | None = None) -> Callable[[], None]:
        entry = (event_type, listener)
        with self._lock:
            self._listeners.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._listeners:
                    self._listeners.remove(entry)

        return _unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for event_type, listener in listeners:
            if event_type is not None and not isinstance(event, event_type):
                continue
            try:
                listener(event)
            except Exception:
                LOGGER.exception("Listener %r failed for %s", listener, type(event).__name__)


__all__ = ["EventBus", "Event", "RecognizedText", "StatusChanged", "RecordingStateChanged"]
