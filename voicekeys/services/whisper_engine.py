"""faster-whisper backed transcription engine with an explicit mock mode."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable, Optional

import numpy as np

from ..audio.types import AudioSegment
from ..settings import DictationSettings
from .engine import EngineError, EngineStateError, classify_engine_failure

LOGGER = logging.getLogger("voicekeys.whisper")

BLANK_MARKER = "[BLANK_AUDIO]"


def _whisper_model_class():
    from faster_whisper import WhisperModel  # type: ignore

    return WhisperModel


class WhisperEngine:
    """Loads Whisper on :meth:`initialize` and transcribes 16-bit PCM segments."""

    def __init__(
        self,
        settings: DictationSettings,
        *,
        on_segment: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.settings = settings
        self.on_segment = on_segment
        self._lock = threading.Lock()
        self._model = None
        self._ready = False
        self._mock = settings.whisper_mock_transcriber
        if self._mock:
            LOGGER.warning(
                "Whisper mock mode enabled (set WHISPER_USE_MOCK=0 and configure "
                "WHISPER_MODEL to enable real transcription)."
            )

    @property
    def is_ready(self) -> bool:
        return self._ready

    def initialize(self) -> None:
        with self._lock:
            if self._ready:
                return
            if self._mock:
                self._ready = True
                return
            try:
                model_cls = _whisper_model_class()
            except ImportError as exc:
                raise EngineError("faster-whisper is not installed") from exc
            try:
                self._model = model_cls(
                    self.settings.whisper_model,
                    device=self.settings.whisper_device,
                    compute_type=self.settings.whisper_compute_type,
                )
            except Exception as exc:  # pragma: no cover - hardware/env dep
                LOGGER.error(
                    "Failed to load Whisper model '%s': %s",
                    self.settings.whisper_model,
                    exc,
                )
                raise EngineError(f"Failed to load Whisper model '{self.settings.whisper_model}': {exc}") from exc
            self._ready = True
            LOGGER.info("Whisper model '%s' ready", self.settings.whisper_model)

    def transcribe(self, segment: AudioSegment, cancel: Optional[threading.Event] = None) -> str:
        if not self._ready:
            raise EngineStateError("Whisper is not initialized")
        if self._mock:
            return f"mock transcript {segment.duration_ms} ms"
        model = self._model
        if model is None:
            raise EngineStateError("Whisper model is in an invalid state")
        audio = _to_float32(segment.samples)
        try:
            segments, _info = model.transcribe(
                audio,
                language=self.settings.whisper_language,
                beam_size=self.settings.whisper_beam_size,
            )
            return _join_segments(segments, cancel, self.on_segment)
        except EngineError:
            raise
        except Exception as exc:
            raise classify_engine_failure(exc) from exc

    def dispose(self) -> None:
        with self._lock:
            self._model = None
            self._ready = False


def _to_float32(pcm: bytes) -> np.ndarray:
    usable = len(pcm) - (len(pcm) % 2)
    samples = np.frombuffer(pcm[:usable], dtype="<i2")
    return samples.astype(np.float32) / 32768.0


def _join_segments(
    segments: Iterable,
    cancel: Optional[threading.Event],
    on_segment: Optional[Callable[[str], None]] = None,
) -> str:
    # faster-whisper decodes lazily, so stopping here stops the model work too.
    pieces = []
    for segment in segments:
        if cancel is not None and cancel.is_set():
            LOGGER.debug("Transcription cancelled after %d segment(s)", len(pieces))
            break
        text = (getattr(segment, "text", "") or "").strip()
        if not text or BLANK_MARKER in text:
            continue
        pieces.append(text)
        if on_segment is not None:
            on_segment(text)
    return " ".join(pieces).strip()


__all__ = ["WhisperEngine"]
