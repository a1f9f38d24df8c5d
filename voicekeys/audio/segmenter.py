"""Amplitude-based utterance segmentation over a live capture device."""

from __future__ import annotations

import io
import logging
import queue
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional

import numpy as np
import soundfile as sf

from ..metrics import SEGMENT_COUNTER, SEGMENT_DURATION
from ..services.logger import LogBuffer
from ..settings import DictationSettings
from .capture import CaptureDevice, DeviceError
from .levels import measure_loudness, normalize_segment
from .types import (
    AudioChunk,
    AudioFormat,
    AudioSegment,
    CaptureOutcome,
    CaptureResult,
    FinishReason,
)

LOGGER = logging.getLogger("voicekeys.segmenter")

WaitFn = Callable[[threading.Event, float], bool]


def _default_wait(stop_event: threading.Event, timeout: float) -> bool:
    return stop_event.wait(timeout)


class CaptureSession:
    """State of the recording in progress.

    The device callback only calls :meth:`enqueue`; everything else runs on the
    thread driving the segmenter, so the counters need no locking.
    """

    def __init__(self, fmt: AudioFormat, silence_threshold: float) -> None:
        self.fmt = fmt
        self.silence_threshold = silence_threshold
        self.buffer = bytearray()
        self.has_speech = False
        self.silence_run = 0
        self.elapsed_ms = 0
        self.last_level = 0.0
        self.handle: Any = None
        self._inbox: queue.SimpleQueue[AudioChunk] = queue.SimpleQueue()

    def enqueue(self, chunk: AudioChunk) -> None:
        self._inbox.put(chunk)

    def drain(self) -> int:
        fed = 0
        while True:
            try:
                chunk = self._inbox.get_nowait()
            except queue.Empty:
                return fed
            self.feed(chunk)
            fed += 1

    def feed(self, chunk: AudioChunk) -> float:
        payload = chunk.payload
        level = measure_loudness(payload)
        self.last_level = level
        if level > self.silence_threshold:
            self.has_speech = True
            self.silence_run = 0
        elif self.has_speech:
            self.silence_run += 1
        self.buffer.extend(payload)
        return level

    def advance(self, step_ms: int) -> int:
        self.elapsed_ms += step_ms
        return self.elapsed_ms

    def release(self) -> None:
        self.buffer = bytearray()
        self.handle = None


class AudioSegmenter:
    def __init__(
        self,
        device: CaptureDevice,
        settings: DictationSettings,
        logger: LogBuffer,
        *,
        on_recording: Callable[[bool], None] | None = None,
        wait: WaitFn | None = None,
    ) -> None:
        self.device = device
        self.settings = settings
        self.logger = logger
        self.fmt = settings.audio_format
        self.on_recording = on_recording
        self._wait = wait or _default_wait
        self._gate = threading.Lock()
        self._session: Optional[CaptureSession] = None

    @property
    def is_recording(self) -> bool:
        return self._session is not None

    def start_capture(self) -> CaptureSession:
        with self._gate:
            if self._session is not None:
                return self._session
            self.logger.add("Starting audio capture...")
            session = CaptureSession(self.fmt, self.settings.silence_threshold)
            try:
                session.handle = self.device.open(self.fmt, session.enqueue)
            except DeviceError as exc:
                self.logger.add(f"Audio capture error: {exc}", logging.ERROR)
                session.release()
                raise
            except Exception as exc:
                self.logger.add(f"Audio capture error: {exc}", logging.ERROR)
                session.release()
                raise DeviceError(str(exc)) from exc
            self._session = session
        self._notify_recording(True)
        return session

    def stop_capture(self, emit: bool = True, finish: FinishReason | None = None) -> CaptureResult:
        detached = False
        try:
            with self._gate:
                session = self._session
                if session is None:
                    return CaptureResult(CaptureOutcome.DISCARDED)
                self._session = None
                detached = True
                return self._close_session(session, emit, finish)
        finally:
            # Outside the gate: listeners may start the next capture.
            if detached:
                self._notify_recording(False)

    def _close_session(
        self, session: CaptureSession, emit: bool, finish: FinishReason | None
    ) -> CaptureResult:
        self.logger.add("Stopping audio capture...")
        try:
            self._close_device(session)
            session.drain()
            if not emit:
                return CaptureResult(
                    CaptureOutcome.DISCARDED,
                    elapsed_ms=session.elapsed_ms,
                    has_speech=session.has_speech,
                    finish=finish,
                )
            return self._finalize(session, finish or FinishReason.CUTOFF)
        finally:
            session.release()

    def capture_segment(self, stop_event: threading.Event) -> CaptureResult:
        """Run one full start/stop cycle and return the segment decision."""
        session = self.start_capture()
        tick_s = self.settings.tick_ms / 1000.0
        finish: FinishReason | None = None
        try:
            while finish is None:
                if self._wait(stop_event, tick_s) or stop_event.is_set():
                    break
                session.drain()
                session.advance(self.settings.tick_ms)
                finish = self._finish_reason(session)
        except BaseException:
            self.stop_capture(emit=False)
            raise

        if finish is None:
            result = self.stop_capture(emit=False)
            result.outcome = CaptureOutcome.CANCELLED
            return self._record(result)

        if finish is FinishReason.SPEECH_END:
            self.logger.add("Word detected, processing...")
        else:
            self.logger.add("Maximum recording length reached")

        if session.has_speech or session.elapsed_ms >= self.settings.min_audio_ms:
            return self._record(self.stop_capture(emit=True, finish=finish))

        self.logger.add("No speech detected, discarding...")
        result = self.stop_capture(emit=False, finish=finish)
        result.outcome = CaptureOutcome.NO_SPEECH
        return self._record(result)

    def _finish_reason(self, session: CaptureSession) -> FinishReason | None:
        if session.has_speech and session.silence_run >= self.settings.silence_chunks:
            return FinishReason.SPEECH_END
        if session.elapsed_ms >= self.settings.max_recording_ms:
            return FinishReason.CUTOFF
        return None

    def _finalize(self, session: CaptureSession, finish: FinishReason) -> CaptureResult:
        pcm = self._whole_frames(bytes(session.buffer))
        if len(pcm) < self.settings.min_segment_bytes:
            self.logger.add("Audio too short, ignoring")
            return CaptureResult(
                CaptureOutcome.TOO_SHORT,
                elapsed_ms=session.elapsed_ms,
                has_speech=session.has_speech,
                finish=finish,
            )
        wav = self._encode_wav(pcm)
        header_size = len(wav) - len(pcm)
        self.logger.add(f"Audio captured: {len(wav)} bytes")
        data = normalize_segment(
            wav,
            header_size,
            ceiling=self.settings.normalize_ceiling,
            max_gain=self.settings.max_gain,
        )
        segment = AudioSegment(
            data=data,
            header_size=header_size,
            duration_ms=int(len(pcm) / self.fmt.bytes_per_ms),
            finish=finish,
            sample_rate=self.fmt.sample_rate,
        )
        if self.settings.segment_dump_dir:
            self._dump_segment(segment)
        SEGMENT_DURATION.observe(segment.duration_ms / 1000.0)
        return CaptureResult(
            CaptureOutcome.EMITTED,
            elapsed_ms=session.elapsed_ms,
            has_speech=session.has_speech,
            finish=finish,
            segment=segment,
        )

    def _close_device(self, session: CaptureSession) -> None:
        if session.handle is None:
            return
        try:
            self.device.close(session.handle)
        except Exception as exc:
            self.logger.add(f"Error stopping recording: {exc}", logging.WARNING)

    def _whole_frames(self, pcm: bytes) -> bytes:
        frame = self.fmt.channels * self.fmt.bits_per_sample // 8
        return pcm[: len(pcm) - (len(pcm) % frame)]

    def _to_array(self, pcm: bytes) -> np.ndarray:
        samples = np.frombuffer(pcm, dtype="<i2")
        if self.fmt.channels > 1:
            return samples.reshape(-1, self.fmt.channels)
        return samples

    def _encode_wav(self, pcm: bytes) -> bytes:
        buffer = io.BytesIO()
        sf.write(buffer, self._to_array(pcm), self.fmt.sample_rate, format="WAV", subtype="PCM_16")
        return buffer.getvalue()

    def _dump_segment(self, segment: AudioSegment) -> None:
        out_dir = Path(self.settings.segment_dump_dir or ".")
        path = out_dir / f"segment_{int(time.time() * 1000)}.flac"
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
            sf.write(
                str(path),
                self._to_array(segment.samples),
                segment.sample_rate,
                format="FLAC",
                subtype="PCM_16",
            )
        except (OSError, RuntimeError) as exc:
            self.logger.add(f"Segment dump failed ({path.name}): {exc}", logging.WARNING)

    def _notify_recording(self, recording: bool) -> None:
        if self.on_recording:
            self.on_recording(recording)

    def _record(self, result: CaptureResult) -> CaptureResult:
        SEGMENT_COUNTER.labels(outcome=result.outcome.value).inc()
        return result


__all__ = ["AudioSegmenter", "CaptureSession"]
