"""Mid-stream guard for one model turn.

The guard sees every streamed fragment.  It stops the turn early when the
output degenerates, or when the text announces an illegal phase change or
emits content in a phase that does not allow it.  It never raises: it
records a ``GuardVerdict`` and fires the turn's ``AbortSignal`` so the
transport stops reading, and the session inspects the verdict afterwards.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from docloop.application.degeneration import Thresholds, detect_degeneration
from docloop.config.schema import GuardConfig
from docloop.domain import AbortSignal, Phase, StreamFragment, TaskFamily

logger = logging.getLogger(__name__)

# "status": "working", "s": "review", "phase": "end"
_PHASE_TOKEN = re.compile(r'"(?:s|status|phase)"\s*:\s*"([^"]*)"')
# Keys that carry per-item content or a title.
_CONTENT_TOKEN = re.compile(r'"(?:p|paragraphs|items|tt|titleTranslation)"\s*:')


class Violation(str, Enum):
    DEGENERATION = "degeneration"
    INVALID_PHASE = "invalid_phase"
    ILLEGAL_TRANSITION = "illegal_transition"
    CONTENT_IN_WRONG_PHASE = "content_in_wrong_phase"


@dataclass(frozen=True)
class GuardVerdict:
    """Result of guarding one turn.  ``violation is None`` means the turn is clean."""
    violation: Optional[Violation] = None
    reason: str = ""
    active_phase: Optional[Phase] = None
    requested: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.violation is None

    @property
    def is_degeneration(self) -> bool:
        return self.violation is Violation.DEGENERATION


CLEAN = GuardVerdict()


class StreamGuard:
    """Guards one turn's text stream against degeneration and protocol violations."""

    def __init__(
        self,
        source_text: str,
        family: TaskFamily,
        start_phase: Phase,
        abort: AbortSignal,
        config: Optional[GuardConfig] = None,
    ) -> None:
        cfg = config or GuardConfig()
        self._source = source_text
        self._family = family
        self._start_phase = start_phase
        self._abort = abort
        self._thresholds = Thresholds(
            repeat_threshold=cfg.repeat_threshold,
            window=cfg.window,
            pattern_repeat_threshold=cfg.pattern_repeat_threshold,
        )
        self._check_increment = cfg.check_increment
        self._min_scan_length = cfg.min_scan_length
        self._buffer = ""
        self._scanned_at = 0
        self._verdict = CLEAN

    @property
    def verdict(self) -> GuardVerdict:
        return self._verdict

    @property
    def text(self) -> str:
        return self._buffer

    def feed(self, fragment: StreamFragment) -> GuardVerdict:
        """Account for one fragment; abort the turn on the first violation."""
        if not self._verdict.ok or not fragment.text:
            return self._verdict
        self._buffer += fragment.text
        text = self._buffer

        finding = detect_degeneration(text, self._source, self._thresholds)
        if finding is not None:
            return self._trip(GuardVerdict(
                violation=Violation.DEGENERATION,
                reason=finding.reason,
                active_phase=self._start_phase,
            ))

        if len(text) > self._min_scan_length and len(text) - self._scanned_at > self._check_increment:
            self._scanned_at = len(text)
            verdict = self.scan(text)
            if not verdict.ok:
                return self._trip(verdict)
        return self._verdict

    def finish(self) -> GuardVerdict:
        """Scan whatever arrived since the last incremental scan."""
        if self._verdict.ok and len(self._buffer) > self._scanned_at:
            self._scanned_at = len(self._buffer)
            verdict = self.scan(self._buffer)
            if not verdict.ok:
                self._verdict = verdict
        return self._verdict

    def scan(self, text: str) -> GuardVerdict:
        """Walk phase and content tokens in stream order and validate each one."""
        tokens: List[Tuple[int, str, Optional[str]]] = []
        for m in _PHASE_TOKEN.finditer(text):
            tokens.append((m.start(), "phase", m.group(1)))
        for m in _CONTENT_TOKEN.finditer(text):
            tokens.append((m.start(), "content", None))
        tokens.sort(key=lambda t: t[0])

        active = self._start_phase
        for _, kind, value in tokens:
            if kind == "phase":
                requested = Phase.parse(value)
                if requested is None:
                    return GuardVerdict(
                        violation=Violation.INVALID_PHASE,
                        reason=f"unknown phase {value!r}",
                        active_phase=active,
                        requested=value,
                    )
                if not self._family.is_legal(active, requested):
                    return GuardVerdict(
                        violation=Violation.ILLEGAL_TRANSITION,
                        reason=f"illegal transition {active.value} -> {requested.value}",
                        active_phase=active,
                        requested=requested.value,
                    )
                active = requested
            elif self._family.guards_content and not self._family.permits_content(active):
                return GuardVerdict(
                    violation=Violation.CONTENT_IN_WRONG_PHASE,
                    reason=f"content emitted during {active.value}",
                    active_phase=active,
                )
        return CLEAN

    def _trip(self, verdict: GuardVerdict) -> GuardVerdict:
        self._verdict = verdict
        logger.warning("Stream guard abort (%s): %s", verdict.violation.value, verdict.reason)
        self._abort.abort(verdict.reason)
        return verdict
