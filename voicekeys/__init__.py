"""Voice-activity segmented dictation on top of a local speech-to-text engine."""

__version__ = "0.1.0"
