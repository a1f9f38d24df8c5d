"""Cleanup of raw recognizer output before it reaches the keyboard."""

from __future__ import annotations

import re
from typing import Iterable

# Non-speech annotations emitted by Whisper-style models: [BLANK_AUDIO], (tapping), <noise>, ♪ ... ♪
ANNOTATION_PATTERNS = (
    r"\[[^\]]*\]",
    r"\([^)]*\)",
    r"<\w[^<>]{0,30}>",
    r"\{[^}]*\}",
    r"♪[^♪]*♪",
    r"♪",
)

_SPACE_BEFORE_PUNCT = re.compile(r"\s+([,.!?;:])")
_REPEATED_PUNCT = re.compile(r"([,;:!?])\1+")
_COMMA_BEFORE_STOP = re.compile(r",+([.!?])")
_LEADING_JUNK = re.compile(r"^[\s,.;:!?\-]+")
_SENTENCE_START = re.compile(r"([.!?]\s+)([a-z])")
_LONE_I = re.compile(r"(?<![\w'])i(?=$|[\s',.!?;:])(?!\.\w)")
_WHITESPACE = re.compile(r"\s+")


class TextSanitizer:
    """Strips annotations and tidies spacing, punctuation and capitalization."""

    def __init__(self, extra_patterns: Iterable[str] = ()) -> None:
        self._annotations = [re.compile(p) for p in (*ANNOTATION_PATTERNS, *extra_patterns)]

    def clean(self, text: str | None) -> str:
        if not text:
            return ""
        out = text
        for pattern in self._annotations:
            out = pattern.sub(" ", out)
        out = _WHITESPACE.sub(" ", out)
        out = _SPACE_BEFORE_PUNCT.sub(r"\1", out)
        out = _REPEATED_PUNCT.sub(r"\1", out)
        out = _COMMA_BEFORE_STOP.sub(r"\1", out)
        out = _LEADING_JUNK.sub("", out).strip()
        if not any(ch.isalnum() for ch in out):
            return ""
        out = _SENTENCE_START.sub(lambda m: m.group(1) + m.group(2).upper(), out)
        out = _LONE_I.sub("I", out)
        return out


def sanitize_text(text: str | None) -> str:
    return TextSanitizer().clean(text)


__all__ = ["TextSanitizer", "sanitize_text", "ANNOTATION_PATTERNS"]
