"""Bounded status log shared by the recorder and the orchestrator."""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime
from typing import List, Optional

from .events import EventBus, StatusChanged

LOGGER = logging.getLogger("voicekeys.status")


class LogBuffer:
    def __init__(self, max_lines: int = 200, bus: Optional[EventBus] = None) -> None:
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._lock = threading.Lock()
        self.bus = bus

    def add(self, message: str, level: int = logging.INFO) -> None:
        stamp = datetime.now().strftime("%H:%M:%S")
        with self._lock:
            self._lines.append(f"{stamp} {message}")
        LOGGER.log(level, message)
        if self.bus:
            self.bus.publish(StatusChanged(message))

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def messages(self) -> List[str]:
        return [line.split(" ", 1)[1] for line in self.lines()]

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()


__all__ = ["LogBuffer"]
