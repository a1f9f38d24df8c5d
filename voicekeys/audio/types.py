"""Dataclasses shared across audio helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


@dataclass(frozen=True, slots=True)
class AudioFormat:
    """PCM layout requested from the capture device."""

    sample_rate: int = 16000
    bits_per_sample: int = 16
    channels: int = 1

    @property
    def bytes_per_ms(self) -> float:
        return self.sample_rate * self.bits_per_sample * self.channels / 8 / 1000

    def chunk_bytes(self, duration_ms: int) -> int:
        return int(self.bytes_per_ms * duration_ms)

    def frames_for(self, duration_ms: int) -> int:
        return int(self.sample_rate * duration_ms / 1000)


@dataclass(frozen=True, slots=True)
class AudioChunk:
    """One device buffer of signed 16-bit little-endian PCM."""

    data: bytes
    byte_count: int = -1

    def __post_init__(self) -> None:
        if self.byte_count < 0:
            object.__setattr__(self, "byte_count", len(self.data))

    @property
    def payload(self) -> bytes:
        return self.data[: self.byte_count]


class FinishReason(str, Enum):
    SPEECH_END = "speech_end"
    CUTOFF = "cutoff"


class CaptureOutcome(str, Enum):
    EMITTED = "emitted"
    NO_SPEECH = "no_speech"
    TOO_SHORT = "too_short"
    CANCELLED = "cancelled"
    DISCARDED = "discarded"


@dataclass(frozen=True, slots=True)
class AudioSegment:
    """Finished recording: WAV header followed by PCM samples."""

    data: bytes
    header_size: int
    duration_ms: int
    finish: FinishReason = FinishReason.SPEECH_END
    sample_rate: int = 16000

    @property
    def samples(self) -> bytes:
        return self.data[self.header_size :]

    @property
    def header(self) -> bytes:
        return self.data[: self.header_size]


@dataclass(slots=True)
class CaptureResult:
    """Decision made at the end of one capture cycle."""

    outcome: CaptureOutcome
    elapsed_ms: int = 0
    has_speech: bool = False
    finish: Optional[FinishReason] = None
    segment: Optional[AudioSegment] = field(default=None)
