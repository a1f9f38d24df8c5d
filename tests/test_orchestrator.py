import threading
import time

import pytest

from voicekeys.audio.capture import DeviceError
from voicekeys.audio.types import AudioSegment, CaptureOutcome, CaptureResult
from voicekeys.services.engine import EngineError, EngineStateError
from voicekeys.services.events import EventBus, RecognizedText, StatusChanged
from voicekeys.services.logger import LogBuffer
from voicekeys.services.orchestrator import (
    OrchestratorState,
    TranscriptionOrchestrator,
    TranscriptionOutcome,
)
from voicekeys.settings import DictationSettings


def _segment(duration_ms: int = 1000) -> AudioSegment:
    return AudioSegment(data=b"RIFF" + bytes(40) + bytes(32 * duration_ms), header_size=44, duration_ms=duration_ms)


def _emitted(duration_ms: int = 1000) -> CaptureResult:
    return CaptureResult(CaptureOutcome.EMITTED, elapsed_ms=duration_ms, has_speech=True, segment=_segment(duration_ms))


class FakeEngine:
    def __init__(self, replies=(), *, fail_init: Exception | None = None, block: threading.Event | None = None) -> None:
        self.replies = list(replies)
        self.fail_init = fail_init
        self.block = block
        self.ready = False
        self.disposed = False
        self.calls = 0
        self.started = threading.Event()
        self.cancels: list[threading.Event] = []

    @property
    def is_ready(self) -> bool:
        return self.ready

    def initialize(self) -> None:
        if self.fail_init:
            raise self.fail_init
        self.ready = True

    def transcribe(self, segment, cancel=None):
        self.calls += 1
        self.cancels.append(cancel)
        self.started.set()
        if self.block is not None:
            self.block.wait(5)
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, Exception):
            raise reply
        return reply

    def dispose(self) -> None:
        self.disposed = True
        self.ready = False


class ScriptedSegmenter:
    def __init__(self, results=()) -> None:
        self.results = list(results)
        self.exhausted = threading.Event()

    def capture_segment(self, stop_event):
        if not self.results:
            self.exhausted.set()
            stop_event.wait(0.05)
            return CaptureResult(CaptureOutcome.CANCELLED)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _make(engines, results=(), **overrides):
    overrides.setdefault("inter_cycle_delay_ms", 0)
    bus = EventBus()
    events = []
    bus.subscribe(events.append)
    pool = list(engines)
    segmenter = ScriptedSegmenter(results)
    orchestrator = TranscriptionOrchestrator(
        segmenter,
        lambda: pool.pop(0),
        DictationSettings(**overrides),
        LogBuffer(bus=bus),
        bus,
        poll_interval=0.01,
    )
    return orchestrator, segmenter, events


def _texts(events):
    return [e.text for e in events if isinstance(e, RecognizedText)]


def _statuses(events):
    return [e.message for e in events if isinstance(e, StatusChanged)]


def test_recognized_text_is_sanitized_and_published():
    orchestrator, _, events = _make([FakeEngine(["(tapping) hello   world"])])
    assert orchestrator._ensure_engine()

    outcome = orchestrator.process_segment(_segment())

    assert outcome is TranscriptionOutcome.TEXT
    assert _texts(events) == ["hello world"]
    assert orchestrator.state is OrchestratorState.IDLE


def test_empty_transcript_reports_no_speech():
    orchestrator, _, events = _make([FakeEngine(["[BLANK_AUDIO]"])])
    orchestrator._ensure_engine()

    assert orchestrator.process_segment(_segment()) is TranscriptionOutcome.EMPTY
    assert _texts(events) == []
    assert "No speech detected, ready for next capture" in _statuses(events)


def test_timeout_abandons_call_and_skips_until_it_settles():
    release = threading.Event()
    engine = FakeEngine(["late", "fresh"], block=release)
    orchestrator, _, events = _make([engine], base_timeout_ms=200)
    orchestrator._ensure_engine()

    started = time.monotonic()
    assert orchestrator.process_segment(_segment()) is TranscriptionOutcome.TIMEOUT
    assert time.monotonic() - started < 2
    assert "Recognition timed out, continuing" in _statuses(events)
    assert engine.cancels[0].is_set()

    # abandoned call still running in the worker
    assert orchestrator.process_segment(_segment()) is TranscriptionOutcome.SKIPPED
    assert engine.calls == 1

    release.set()
    orchestrator._pending.result(timeout=2)
    assert orchestrator.process_segment(_segment()) is TranscriptionOutcome.TEXT
    assert _texts(events) == ["fresh"]


def test_hung_call_replaces_engine_after_repeated_skips():
    never = threading.Event()
    hung = FakeEngine(["late"], block=never)
    replacement = FakeEngine(["fresh"])
    orchestrator, _, events = _make([hung, replacement], base_timeout_ms=100)
    orchestrator._ensure_engine()

    outcomes = [orchestrator.process_segment(_segment()) for _ in range(4)]

    assert outcomes == [
        TranscriptionOutcome.TIMEOUT,
        TranscriptionOutcome.SKIPPED,
        TranscriptionOutcome.SKIPPED,
        TranscriptionOutcome.RECOVERED,
    ]
    assert hung.disposed
    assert orchestrator.engine is replacement
    assert not orchestrator.is_paused
    assert "Recognition engine reinitialized" in _statuses(events)

    assert orchestrator.process_segment(_segment()) is TranscriptionOutcome.TEXT
    assert _texts(events) == ["fresh"]
    never.set()


def test_second_segment_dropped_while_first_in_flight():
    release = threading.Event()
    engine = FakeEngine(["first"], block=release)
    orchestrator, _, events = _make([engine])
    orchestrator._ensure_engine()
    outcomes = []

    worker = threading.Thread(target=lambda: outcomes.append(orchestrator.process_segment(_segment())))
    worker.start()
    assert engine.started.wait(2)

    assert orchestrator.process_segment(_segment()) is TranscriptionOutcome.SKIPPED
    assert "Still processing previous audio, skipping" in _statuses(events)

    release.set()
    worker.join(2)
    assert outcomes == [TranscriptionOutcome.TEXT]
    assert engine.calls == 1
    assert _texts(events) == ["first"]


@pytest.mark.parametrize(
    "failure",
    [EngineStateError("Whisper is not initialized"), RuntimeError("context in invalid state")],
)
def test_engine_state_error_recreates_engine(failure):
    broken = FakeEngine([failure])
    replacement = FakeEngine(["hello"])
    orchestrator, _, events = _make([broken, replacement])
    orchestrator._ensure_engine()

    assert orchestrator.process_segment(_segment()) is TranscriptionOutcome.RECOVERED
    assert broken.disposed
    assert orchestrator.engine is replacement and replacement.is_ready
    assert not orchestrator.is_paused

    assert orchestrator.process_segment(_segment()) is TranscriptionOutcome.TEXT
    assert _texts(events) == ["hello"]


def test_failed_recovery_pauses():
    broken = FakeEngine([EngineStateError("not initialized")])
    orchestrator, _, _ = _make([broken, FakeEngine(fail_init=EngineError("model missing"))])
    orchestrator._ensure_engine()

    assert orchestrator.process_segment(_segment()) is TranscriptionOutcome.RECOVERY_FAILED
    assert orchestrator.is_paused
    assert "recovery failed" in orchestrator.last_error
    assert orchestrator.engine is None


def test_other_engine_errors_do_not_recover():
    engine = FakeEngine([ValueError("boom")])
    orchestrator, _, events = _make([engine])
    orchestrator._ensure_engine()

    assert orchestrator.process_segment(_segment()) is TranscriptionOutcome.FAILED
    assert orchestrator.engine is engine and not engine.disposed
    assert "Recognition error: boom" in _statuses(events)


def test_deadline_policy():
    orchestrator, _, _ = _make([], base_timeout_ms=2000, short_utterance_ms=2500)
    assert orchestrator.deadline_for(800) == 2000
    assert orchestrator.deadline_for(2500) == 2000
    assert orchestrator.deadline_for(3000) == 2000
    assert orchestrator.deadline_for(6000) == 3000


def test_loop_emits_text_in_capture_order():
    engine = FakeEngine(["first", "second"])
    results = [_emitted(), CaptureResult(CaptureOutcome.NO_SPEECH), _emitted()]
    orchestrator, segmenter, events = _make([engine], results)

    orchestrator.start()
    assert segmenter.exhausted.wait(2)
    orchestrator.stop()

    assert _texts(events) == ["first", "second"]
    assert orchestrator.state is OrchestratorState.IDLE
    assert engine.disposed
    assert not orchestrator.is_running


def test_device_error_halts_loop():
    orchestrator, _, events = _make([FakeEngine()], [DeviceError("unplugged")])

    orchestrator.start()
    assert orchestrator.wait(2)

    assert orchestrator.is_paused
    assert orchestrator.last_error == "Audio device error: unplugged"
    assert "Audio device error: unplugged" in _statuses(events)


def test_engine_start_failure_halts_loop():
    orchestrator, segmenter, _ = _make([FakeEngine(fail_init=EngineError("no model"))], [_emitted()])

    orchestrator.start()
    assert orchestrator.wait(2)

    assert "failed to start" in orchestrator.last_error
    assert segmenter.results  # never captured


def test_repeated_unexpected_errors_pause():
    results = [RuntimeError("glitch"), RuntimeError("glitch again"), _emitted()]
    orchestrator, segmenter, events = _make([FakeEngine(["unused"])], results)

    orchestrator.start()
    assert orchestrator.wait(2)

    assert orchestrator.is_paused
    assert "repeated errors" in orchestrator.last_error
    assert "Dictation error: glitch" in _statuses(events)
    assert len(segmenter.results) == 1


def test_stop_cancels_in_flight_transcription():
    release = threading.Event()
    engine = FakeEngine(["never"], block=release)
    orchestrator, _, events = _make([engine], [_emitted()], base_timeout_ms=10_000)

    orchestrator.start()
    assert engine.started.wait(2)
    started = time.monotonic()
    orchestrator.stop()

    assert time.monotonic() - started < 2
    assert "Recognition cancelled" in _statuses(events)
    assert engine.cancels[0].is_set()
    assert _texts(events) == []
    release.set()


def test_restart_after_pause():
    orchestrator, segmenter, events = _make(
        [FakeEngine(["again"])], [DeviceError("unplugged"), _emitted()]
    )
    orchestrator.start()
    assert orchestrator.wait(2)
    assert orchestrator.is_paused

    orchestrator.start()
    assert segmenter.exhausted.wait(2)
    orchestrator.stop()

    assert orchestrator.last_error is None
    assert _texts(events) == ["again"]
