"""Contract between the orchestrator and a speech-to-text backend."""

from __future__ import annotations

import threading
from typing import Callable, Optional, Protocol

from ..audio.types import AudioSegment


class EngineError(Exception):
    pass


class EngineStateError(EngineError):
    """The engine is not initialized or reports an invalid internal state."""


class TranscriptionEngine(Protocol):
    @property
    def is_ready(self) -> bool:
        ...

    def initialize(self) -> None:
        ...

    def transcribe(self, segment: AudioSegment, cancel: Optional[threading.Event] = None) -> str:
        """Return recognized text; may stop early once ``cancel`` is set."""
        ...

    def dispose(self) -> None:
        ...


EngineFactory = Callable[[], TranscriptionEngine]

_STATE_MARKERS = ("not initialized", "invalid state")


def classify_engine_failure(exc: BaseException) -> EngineError:
    if isinstance(exc, EngineError):
        return exc
    message = str(exc)
    if any(marker in message.lower() for marker in _STATE_MARKERS):
        return EngineStateError(message)
    return EngineError(message or type(exc).__name__)


__all__ = [
    "EngineError",
    "EngineStateError",
    "TranscriptionEngine",
    "EngineFactory",
    "classify_engine_failure",
]
