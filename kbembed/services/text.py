from __future__ import annotations

import math
import re


_CRLF_RE = re.compile(r"\r\n?")
_BLANK_RUN_RE = re.compile(r"\n{3,}")
_TRAILING_SPACE_RE = re.compile(r"[ \t]+\n")


def normalize_input_text(value: str) -> str:
    # Chat input: drop NULs, unify line endings, cap blank runs at one empty line.
    text = value.replace("\u0000", " ")
    text = _CRLF_RE.sub("\n", text)
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip()


def sanitize_text(value: str) -> str:
    # Extracted document text gets the same treatment plus trailing-space cleanup.
    text = value.replace("\u0000", " ")
    text = _CRLF_RE.sub("\n", text)
    text = _TRAILING_SPACE_RE.sub("\n", text)
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip()


def estimate_tokens(text: str) -> int:
    return max(1, math.ceil(len(text) / 4))
