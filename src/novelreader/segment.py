from __future__ import annotations

import re

_LINE_BREAKS = re.compile(r"\r\n|\r")
_WHITESPACE_RUN = re.compile(r"\s+")


def normalize_line_breaks(text: str) -> str:
    return _LINE_BREAKS.sub("\n", text)


def segment(raw_text: str) -> list[str]:
    """
    Split raw text into paragraphs.

    Every line break starts a new paragraph. Lines are trimmed, internal
    whitespace runs collapse to one space, and lines left empty are dropped.
    """
    paragraphs: list[str] = []
    for line in normalize_line_breaks(raw_text).split("\n"):
        cleaned = _WHITESPACE_RUN.sub(" ", line.strip())
        if cleaned:
            paragraphs.append(cleaned)
    return paragraphs


__all__ = ["segment", "normalize_line_breaks"]
