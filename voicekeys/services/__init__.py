"""Transcription engine, orchestration loop, events and status log."""
