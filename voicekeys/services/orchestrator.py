"""Continuous capture -> transcribe -> emit loop."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol

from ..audio.capture import DeviceError, SoundDeviceInput
from ..audio.segmenter import AudioSegmenter
from ..audio.types import AudioSegment, CaptureResult
from ..metrics import ENGINE_RECOVERY_COUNTER, TRANSCRIPTION_COUNTER, TRANSCRIPTION_LATENCY
from ..settings import DictationSettings, get_settings
from .engine import (
    EngineFactory,
    EngineStateError,
    TranscriptionEngine,
    classify_engine_failure,
)
from .events import EventBus, RecognizedText, RecordingStateChanged
from .logger import LogBuffer
from .text_sanitizer import TextSanitizer
from .whisper_engine import WhisperEngine

LOGGER = logging.getLogger("voicekeys.orchestrator")

MAX_CONSECUTIVE_FAILURES = 2
# Segments dropped behind an abandoned call before the engine is replaced.
MAX_STALE_SKIPS = 2


class OrchestratorState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    TRANSCRIBING = "transcribing"
    RECOVERING = "recovering"


class TranscriptionOutcome(str, Enum):
    TEXT = "text"
    EMPTY = "empty"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    FAILED = "failed"
    SKIPPED = "skipped"
    RECOVERED = "recovered"
    RECOVERY_FAILED = "recovery_failed"


@dataclass(slots=True)
class TranscriptionRequest:
    segment: AudioSegment
    deadline_ms: int
    cancel: threading.Event = field(default_factory=threading.Event)


class Segmenter(Protocol):
    def capture_segment(self, stop_event: threading.Event) -> CaptureResult:
        ...


class TranscriptionOrchestrator:
    def __init__(
        self,
        segmenter: Segmenter,
        engine_factory: EngineFactory,
        settings: DictationSettings,
        logger: LogBuffer,
        bus: EventBus,
        *,
        sanitizer: TextSanitizer | None = None,
        poll_interval: float = 0.05,
    ) -> None:
        self.segmenter = segmenter
        self.engine_factory = engine_factory
        self.settings = settings
        self.logger = logger
        self.bus = bus
        self.sanitizer = sanitizer or TextSanitizer()
        self.poll_interval = poll_interval
        self.last_error: Optional[str] = None
        self._state = OrchestratorState.IDLE
        self._state_lock = threading.Lock()
        self._engine: Optional[TranscriptionEngine] = None
        self._guard = threading.Lock()
        self._pending: Optional[Future] = None
        self._pending_request: Optional[TranscriptionRequest] = None
        self._stale_skips = 0
        self._stop_event = threading.Event()
        self._paused = False
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> OrchestratorState:
        with self._state_lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def engine(self) -> Optional[TranscriptionEngine]:
        return self._engine

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._paused = False
        self.last_error = None
        self._thread = threading.Thread(target=self._run, name="dictation", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                LOGGER.warning("Dictation thread did not exit within %.1fs", timeout)
                return
        self._release_engine()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the loop exits; ``True`` if it did."""
        if not self._thread:
            return True
        self._thread.join(timeout=timeout)
        return not self._thread.is_alive()

    def deadline_for(self, duration_ms: int) -> int:
        base = self.settings.base_timeout_ms
        if duration_ms <= self.settings.short_utterance_ms:
            return base
        return max(base, duration_ms // 2)

    def _run(self) -> None:
        self.logger.add("Dictation started")
        failures = 0
        try:
            if not self._ensure_engine():
                return
            while not self._stop_event.is_set() and not self._paused:
                try:
                    self._cycle()
                    failures = 0
                except DeviceError as exc:
                    self._halt(f"Audio device error: {exc}")
                except Exception as exc:
                    failures += 1
                    LOGGER.exception("Dictation cycle failed")
                    if failures >= MAX_CONSECUTIVE_FAILURES:
                        self._halt(f"Dictation paused after repeated errors: {exc}")
                    else:
                        self.logger.add(f"Dictation error: {exc}", logging.ERROR)
                        self._stop_event.wait(self.settings.inter_cycle_delay_ms / 1000.0)
        finally:
            self._set_state(OrchestratorState.IDLE)
            self.logger.add("Dictation stopped")

    def _cycle(self) -> None:
        self._set_state(OrchestratorState.CAPTURING)
        result = self.segmenter.capture_segment(self._stop_event)
        if result.segment is None:
            self._stop_event.wait(self.settings.inter_cycle_delay_ms / 1000.0)
            return
        self.process_segment(result.segment)

    def process_segment(self, segment: AudioSegment) -> TranscriptionOutcome:
        """Transcribe one segment unless another transcription is still in flight."""
        if not self._guard.acquire(blocking=False):
            return self._skip()
        try:
            pending = self._pending
            if pending is not None and not pending.done():
                self._stale_skips += 1
                if self._stale_skips <= MAX_STALE_SKIPS:
                    return self._skip()
                return self._abandon_stale()
            self._stale_skips = 0
            engine = self._engine
            if engine is None:
                return self._recover(EngineStateError("Recognition engine is not initialized"))
            request = TranscriptionRequest(segment, self.deadline_for(segment.duration_ms))
            self._set_state(OrchestratorState.TRANSCRIBING)
            self.logger.add("Processing audio for words...")
            return self._transcribe(engine, request)
        finally:
            self._guard.release()
            if self.state in (OrchestratorState.TRANSCRIBING, OrchestratorState.RECOVERING):
                self._set_state(
                    OrchestratorState.CAPTURING if self.is_running else OrchestratorState.IDLE
                )

    def _transcribe(self, engine: TranscriptionEngine, request: TranscriptionRequest) -> TranscriptionOutcome:
        started = time.perf_counter()
        future = self._submit(engine, request)
        winner = self._race(future, request)
        if winner != "done":
            request.cancel.set()
            if winner == "timeout":
                self.logger.add("Recognition timed out, continuing", logging.WARNING)
                return self._count(TranscriptionOutcome.TIMEOUT, started)
            self.logger.add("Recognition cancelled")
            return self._count(TranscriptionOutcome.CANCELLED, started)

        try:
            raw = future.result()
        except Exception as exc:
            failure = classify_engine_failure(exc)
            if isinstance(failure, EngineStateError):
                self._count(TranscriptionOutcome.FAILED, started)
                return self._recover(failure)
            self.logger.add(f"Recognition error: {failure}", logging.ERROR)
            return self._count(TranscriptionOutcome.FAILED, started)

        text = self.sanitizer.clean(raw)
        if not text:
            self.logger.add("No speech detected, ready for next capture")
            return self._count(TranscriptionOutcome.EMPTY, started)
        self.logger.add(f"Words recognized: {text}")
        self.bus.publish(RecognizedText(text))
        return self._count(TranscriptionOutcome.TEXT, started)

    def _submit(self, engine: TranscriptionEngine, request: TranscriptionRequest) -> Future:
        # Daemon worker so an abandoned call can never hold the process open.
        future: Future = Future()

        def _work() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(engine.transcribe(request.segment, request.cancel))
            except BaseException as exc:
                future.set_exception(exc)

        self._pending = future
        self._pending_request = request
        threading.Thread(target=_work, name="transcribe", daemon=True).start()
        return future

    def _race(self, future: Future, request: TranscriptionRequest) -> str:
        deadline = time.monotonic() + request.deadline_ms / 1000.0
        while True:
            if self._stop_event.is_set():
                return "cancelled"
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return "timeout"
            done, _ = wait([future], timeout=min(self.poll_interval, remaining))
            if done:
                return "done"

    def _recover(self, exc: EngineStateError) -> TranscriptionOutcome:
        self._set_state(OrchestratorState.RECOVERING)
        self.logger.add(f"Recognition engine error ({exc}), reinitializing...", logging.WARNING)
        old, self._engine = self._engine, None
        if old is not None:
            try:
                old.dispose()
            except Exception as dispose_exc:
                self.logger.add(f"Engine dispose failed: {dispose_exc}", logging.WARNING)
        try:
            engine = self.engine_factory()
            engine.initialize()
        except Exception as init_exc:
            ENGINE_RECOVERY_COUNTER.labels(status="failed").inc()
            self._halt(f"Recognition engine recovery failed: {init_exc}")
            return TranscriptionOutcome.RECOVERY_FAILED
        self._engine = engine
        ENGINE_RECOVERY_COUNTER.labels(status="ok").inc()
        self.logger.add("Recognition engine reinitialized")
        return TranscriptionOutcome.RECOVERED

    def _abandon_stale(self) -> TranscriptionOutcome:
        """Replace an engine whose timed-out call never returned."""
        if self._pending_request is not None:
            self._pending_request.cancel.set()
        self._pending = None
        self._pending_request = None
        self._stale_skips = 0
        return self._recover(EngineStateError("previous recognition did not finish"))

    def _ensure_engine(self) -> bool:
        if self._engine is not None and self._engine.is_ready:
            return True
        self.logger.add("Starting recognition engine...")
        try:
            engine = self._engine or self.engine_factory()
            engine.initialize()
        except Exception as exc:
            LOGGER.exception("Engine initialization failed")
            self._halt(f"Recognition engine failed to start: {exc}")
            return False
        self._engine = engine
        self.logger.add("Recognition engine ready")
        return True

    def _release_engine(self) -> None:
        pending = self._pending
        if pending is not None and not pending.done():
            if self._pending_request is not None:
                self._pending_request.cancel.set()
            self.logger.add("Recognition still running; engine left to finish", logging.WARNING)
            return
        engine, self._engine = self._engine, None
        if engine is not None:
            engine.dispose()

    def _skip(self) -> TranscriptionOutcome:
        self.logger.add("Still processing previous audio, skipping")
        TRANSCRIPTION_COUNTER.labels(outcome=TranscriptionOutcome.SKIPPED.value).inc()
        return TranscriptionOutcome.SKIPPED

    def _halt(self, message: str) -> None:
        self._paused = True
        self.last_error = message
        self.logger.add(message, logging.ERROR)

    def _count(self, outcome: TranscriptionOutcome, started: float) -> TranscriptionOutcome:
        TRANSCRIPTION_COUNTER.labels(outcome=outcome.value).inc()
        TRANSCRIPTION_LATENCY.observe(time.perf_counter() - started)
        return outcome

    def _set_state(self, state: OrchestratorState) -> None:
        with self._state_lock:
            self._state = state


def build_orchestrator(
    settings: DictationSettings | None = None,
    bus: EventBus | None = None,
    *,
    device=None,
    engine_factory: EngineFactory | None = None,
) -> TranscriptionOrchestrator:
    """Wire the microphone, segmenter and Whisper engine into a ready orchestrator."""
    settings = settings or get_settings()
    bus = bus or EventBus()
    logger = LogBuffer(settings.log_buffer_size, bus=bus)
    segmenter = AudioSegmenter(
        device or SoundDeviceInput(settings.input_device, chunk_ms=settings.chunk_ms),
        settings,
        logger,
        on_recording=lambda recording: bus.publish(RecordingStateChanged(recording)),
    )
    return TranscriptionOrchestrator(
        segmenter,
        engine_factory
        or (
            lambda: WhisperEngine(
                settings, on_segment=lambda text: logger.add(f"Words detected: {text}")
            )
        ),
        settings,
        logger,
        bus,
    )


__all__ = [
    "TranscriptionOrchestrator",
    "OrchestratorState",
    "TranscriptionOutcome",
    "TranscriptionRequest",
    "build_orchestrator",
]
