"""Microphone capture, loudness metering and utterance segmentation."""
