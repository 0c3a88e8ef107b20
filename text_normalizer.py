from __future__ import annotations

import re
from typing import Sequence

_DISALLOWED_CHARS = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Casefolded letters and digits of any script, single-spaced; marks and punctuation dropped."""
    lowered = (text or "").casefold()
    stripped = _DISALLOWED_CHARS.sub("", lowered)
    return _WHITESPACE.sub(" ", stripped).strip()


def split_words(text: str) -> list[str]:
    return (text or "").split()


def ends_with_normalized(previous: str, candidate: str) -> bool:
    return normalize(previous).endswith(normalize(candidate))


def overlap_length(prev_words: Sequence[str], new_words: Sequence[str], max_window: int) -> int:
    max_n = min(max_window, len(prev_words), len(new_words))
    for n in range(max_n, 0, -1):
        tail = normalize(" ".join(prev_words[-n:]))
        head = normalize(" ".join(new_words[:n]))
        if tail and tail == head:
            return n
    return 0
