"""Dictation settings resolved from the environment."""

from __future__ import annotations

import os
from functools import lru_cache

from pydantic import BaseModel, Field

from .audio.types import AudioFormat


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class DictationSettings(BaseModel):
    sample_rate: int = Field(default=int(os.getenv("SAMPLE_RATE", "16000")), gt=0)
    bits_per_sample: int = Field(default=16)
    channels: int = Field(default=1)
    chunk_ms: int = Field(default=int(os.getenv("CHUNK_MS", "50")), gt=0)
    tick_ms: int = Field(default=int(os.getenv("TICK_MS", "50")), gt=0)
    silence_threshold: float = Field(
        default=float(os.getenv("SILENCE_THRESHOLD", "0.02")), ge=0.0, le=1.0
    )
    silence_chunks: int = Field(default=int(os.getenv("SILENCE_CHUNKS", "8")), gt=0)
    max_recording_ms: int = Field(default=int(os.getenv("MAX_RECORDING_MS", "2500")), gt=0)
    min_audio_ms: int = Field(default=int(os.getenv("MIN_AUDIO_MS", "500")), ge=0)
    normalize_ceiling: int = Field(default=16384, gt=0, le=32767)
    max_gain: float = Field(default=float(os.getenv("MAX_GAIN", "4.0")), ge=1.0)
    base_timeout_ms: int = Field(default=int(os.getenv("TRANSCRIBE_TIMEOUT_MS", "2000")), gt=0)
    short_utterance_ms: int = Field(default=int(os.getenv("SHORT_UTTERANCE_MS", "2500")), ge=0)
    inter_cycle_delay_ms: int = Field(default=int(os.getenv("INTER_CYCLE_DELAY_MS", "200")), ge=0)
    input_device: str | None = Field(default=os.getenv("INPUT_DEVICE"))
    whisper_model: str = Field(default=os.getenv("WHISPER_MODEL", "base.en"))
    whisper_device: str = Field(default=os.getenv("WHISPER_DEVICE", "cpu"))
    whisper_compute_type: str = Field(default=os.getenv("WHISPER_COMPUTE_TYPE", "int8"))
    whisper_language: str | None = Field(default=os.getenv("WHISPER_LANGUAGE", "en") or None)
    whisper_beam_size: int = Field(default=int(os.getenv("WHISPER_BEAM_SIZE", "5")), gt=0)
    whisper_mock_transcriber: bool = Field(default=_env_bool("WHISPER_USE_MOCK"))
    segment_dump_dir: str | None = Field(default=os.getenv("SEGMENT_DUMP_DIR"))
    log_buffer_size: int = Field(default=int(os.getenv("LOG_BUFFER_SIZE", "200")), gt=0)

    @property
    def audio_format(self) -> AudioFormat:
        return AudioFormat(
            sample_rate=self.sample_rate,
            bits_per_sample=self.bits_per_sample,
            channels=self.channels,
        )

    @property
    def min_segment_bytes(self) -> int:
        """Byte count of ``min_audio_ms`` worth of audio in the capture format."""
        return (
            self.sample_rate * self.bits_per_sample * self.channels // 8 * self.min_audio_ms // 1000
        )


@lru_cache()
def get_settings() -> DictationSettings:
    return DictationSettings()
