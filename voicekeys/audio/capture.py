"""Microphone input backed by sounddevice."""

from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

from .types import AudioChunk, AudioFormat

LOGGER = logging.getLogger("voicekeys.capture")

ChunkCallback = Callable[[AudioChunk], None]


class DeviceError(Exception):
    pass


class CaptureDevice(Protocol):
    def open(self, fmt: AudioFormat, callback: ChunkCallback) -> Any:
        ...

    def close(self, handle: Any) -> None:
        ...


class SoundDeviceInput:
    """Push-style capture: PortAudio delivers one chunk per ``chunk_ms`` block."""

    def __init__(self, device: int | str | None = None, *, chunk_ms: int = 50) -> None:
        self.device = _parse_device(device)
        self.chunk_ms = chunk_ms
        self._sd = self._try_import_sounddevice()

    def _try_import_sounddevice(self):
        try:
            import sounddevice as sd  # type: ignore

            return sd
        except (ImportError, OSError) as exc:
            LOGGER.warning("sounddevice unavailable: %s", exc)
            return None

    def open(self, fmt: AudioFormat, callback: ChunkCallback) -> Any:
        if self._sd is None:
            raise DeviceError("sounddevice/PortAudio is not available")

        def _on_block(indata, frames, time_info, status) -> None:  # noqa: ARG001
            if status:
                LOGGER.warning("Input stream status: %s", status)
            data = bytes(indata)
            callback(AudioChunk(data, len(data)))

        try:
            stream = self._sd.RawInputStream(
                device=self.device,
                samplerate=fmt.sample_rate,
                channels=fmt.channels,
                dtype=f"int{fmt.bits_per_sample}",
                blocksize=fmt.frames_for(self.chunk_ms),
                callback=_on_block,
            )
            stream.start()
        except Exception as exc:
            raise DeviceError(f"Could not open input device {self.device!r}: {exc}") from exc
        return stream

    def close(self, handle: Any) -> None:
        if handle is None:
            return
        try:
            handle.stop()
        finally:
            handle.close()

    def describe_devices(self) -> list[dict]:
        if self._sd is None:
            raise DeviceError("sounddevice/PortAudio is not available")
        devices = []
        for idx, info in enumerate(self._sd.query_devices()):
            if info.get("max_input_channels", 0) > 0:
                devices.append(
                    {
                        "index": idx,
                        "name": info["name"],
                        "channels": info["max_input_channels"],
                        "default_samplerate": info.get("default_samplerate"),
                    }
                )
        return devices


def _parse_device(device: int | str | None) -> int | str | None:
    if device is None or device == "":
        return None
    if isinstance(device, str) and device.isdigit():
        return int(device)
    return device


__all__ = ["CaptureDevice", "DeviceError", "SoundDeviceInput", "ChunkCallback"]
