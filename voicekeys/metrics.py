"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import Counter, Histogram, Summary, start_http_server

SEGMENT_COUNTER = Counter(
    "dictation_segments_total",
    "Capture cycles by outcome",
    labelnames=("outcome",),
)

TRANSCRIPTION_COUNTER = Counter(
    "dictation_transcriptions_total",
    "Transcription requests by outcome",
    labelnames=("outcome",),
)

TRANSCRIPTION_LATENCY = Histogram(
    "dictation_transcription_seconds",
    "Time from submit to settled transcription",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 4.0, 8.0),
)

ENGINE_RECOVERY_COUNTER = Counter(
    "dictation_engine_recoveries_total",
    "Engine dispose/reinitialize attempts",
    labelnames=("status",),
)

SEGMENT_DURATION = Summary(
    "dictation_segment_duration_seconds",
    "Duration of emitted audio segments",
)


def serve_metrics(port: int, addr: str = "127.0.0.1") -> None:
    start_http_server(port, addr=addr)
