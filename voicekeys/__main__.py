"""Console dictation: prints recognized text as it arrives."""

from __future__ import annotations

import argparse
import logging
import sys

from .audio.capture import DeviceError, SoundDeviceInput
from .metrics import serve_metrics
from .services.events import EventBus, RecognizedText
from .services.orchestrator import build_orchestrator
from .settings import get_settings


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="voicekeys", description=__doc__)
    parser.add_argument("--list-devices", action="store_true", help="list input devices and exit")
    parser.add_argument("--device", help="input device index or name")
    parser.add_argument("--model", help="Whisper model name or path")
    parser.add_argument("--mock", action="store_true", help="use the mock transcriber")
    parser.add_argument("--metrics-port", type=int, help="expose Prometheus metrics on this port")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.list_devices:
        try:
            devices = SoundDeviceInput().describe_devices()
        except DeviceError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1
        for dev in devices:
            print(f"{dev['index']:>3}  {dev['name']}  ({dev['channels']} ch, {dev['default_samplerate']} Hz)")
        return 0

    overrides = {}
    if args.device:
        overrides["input_device"] = args.device
    if args.model:
        overrides["whisper_model"] = args.model
    if args.mock:
        overrides["whisper_mock_transcriber"] = True
    settings = get_settings().model_copy(update=overrides)

    if args.metrics_port:
        serve_metrics(args.metrics_port)

    bus = EventBus()
    bus.subscribe(lambda event: print(event.text, flush=True), RecognizedText)
    orchestrator = build_orchestrator(settings, bus)
    orchestrator.start()
    try:
        while orchestrator.is_running:
            orchestrator.wait(timeout=0.5)
    except KeyboardInterrupt:
        logging.getLogger("voicekeys").info("Interrupted, stopping dictation")
    finally:
        orchestrator.stop()
    if orchestrator.last_error:
        print(f"error: {orchestrator.last_error}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
