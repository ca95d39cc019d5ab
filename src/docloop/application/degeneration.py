"""Repetition heuristic for degenerate model output.

Models that lose the thread tend to emit the same character, or the same
2-5 character pattern, over and over.  The check looks only at the tail of
the output and compares against the source text, so legitimately repetitive
sources (ellipses, "ha ha ha", separators) are not flagged.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from docloop.config.constants import (
    PATTERN_REPEAT_THRESHOLD,
    REPEAT_CHECK_WINDOW,
    REPEAT_THRESHOLD,
    RUNAWAY_OUTPUT_RATIO,
    SOURCE_PATTERN_SIMILARITY_RATIO,
)

_PATTERN_LENGTHS = (2, 3, 4, 5)


@dataclass(frozen=True)
class Thresholds:
    repeat_threshold: int = REPEAT_THRESHOLD
    window: int = REPEAT_CHECK_WINDOW
    pattern_repeat_threshold: int = PATTERN_REPEAT_THRESHOLD


@dataclass(frozen=True)
class DegenerationFinding:
    """What was found: the repeated unit and how often it repeats at the tail."""
    unit: str
    count: int

    @property
    def reason(self) -> str:
        if len(self.unit) == 1:
            return f"character {self.unit!r} repeated {self.count} times"
        return f"pattern {self.unit!r} repeated {self.count} times"


def _longest_run(text: str, ch: str) -> int:
    best = run = 0
    for c in text:
        if c == ch:
            run += 1
            if run > best:
                best = run
        else:
            run = 0
    return best


def _trailing_run(text: str) -> int:
    ch = text[-1]
    n = 0
    for c in reversed(text):
        if c != ch:
            break
        n += 1
    return n


def _trailing_repeats(text: str, pattern_len: int) -> int:
    pattern = text[-pattern_len:]
    count = 0
    end = len(text)
    while end - pattern_len >= 0 and text[end - pattern_len:end] == pattern:
        count += 1
        end -= pattern_len
    return count


def _longest_pattern_block(text: str, pattern: str) -> int:
    """Length in characters of the longest back-to-back run of *pattern* in *text*."""
    best = 0
    plen = len(pattern)
    i = 0
    while i <= len(text) - plen:
        if text.startswith(pattern, i):
            j = i
            while text.startswith(pattern, j):
                j += plen
            best = max(best, j - i)
            i = j
        else:
            i += 1
    return best


def detect_degeneration(
    text: str,
    source: str = "",
    thresholds: Thresholds = Thresholds(),
) -> Optional[DegenerationFinding]:
    """Return a finding when the tail of *text* is degenerate, else ``None``."""
    if not text:
        return None
    recent = text[-thresholds.window:]
    # Runaway output is degenerate even when the source repeats the same unit.
    trust_source = bool(source) and len(text) <= len(source) * RUNAWAY_OUTPUT_RATIO

    if not recent[-1].isspace():
        run = _trailing_run(recent)
        if run >= thresholds.repeat_threshold:
            ch = recent[-1]
            if not (trust_source and _longest_run(source, ch) >= thresholds.repeat_threshold * 0.5):
                return DegenerationFinding(unit=ch, count=run)

    for plen in _PATTERN_LENGTHS:
        if len(recent) < plen * 10:
            continue
        pattern = recent[-plen:]
        if len(set(pattern)) == 1 or pattern.isspace():
            # Single-character runs are the first check's job.
            continue
        count = _trailing_repeats(recent, plen)
        if count < thresholds.pattern_repeat_threshold:
            continue
        if trust_source:
            source_block = _longest_pattern_block(source, pattern)
            if source_block >= count * plen * SOURCE_PATTERN_SIMILARITY_RATIO:
                continue
        return DegenerationFinding(unit=pattern, count=count)

    return None
