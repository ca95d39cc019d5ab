"""Domain models: items, chunks, phases, model responses, session results. Pure data, no I/O."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Phase(str, Enum):
    """Lifecycle stage of one task loop session.

    Values are the strings the model uses in ``update_task_status`` calls and
    in streamed ``"status"`` announcements.
    """

    PLANNING = "planning"
    WORKING = "working"
    REVIEW = "review"
    END = "end"

    @classmethod
    def parse(cls, value: Any) -> Optional["Phase"]:
        """Return the phase named by *value*, or ``None`` if it is not a phase."""
        if isinstance(value, Phase):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class RunId:
    """Unique identifier for a single run (timestamp + random suffix)."""
    value: str


@dataclass(frozen=True)
class Item:
    """One addressable unit of source content (e.g. a paragraph)."""
    id: str
    text: str
    original_index: int  # Position in the unfiltered source sequence


def items_from_texts(pairs: List[Tuple[str, str]]) -> List[Item]:
    """Build items from ``(id, text)`` pairs, numbering every pair.

    Blank entries keep their slot so displayed indices show the gaps.
    """
    return [Item(id=item_id, text=text, original_index=i) for i, (item_id, text) in enumerate(pairs)]


@dataclass(frozen=True)
class Chunk:
    """A bounded group of items processed together by one session."""
    index: int
    text: str
    item_ids: Tuple[str, ...]


@dataclass(frozen=True)
class ExtractedItem:
    """One per-item submission accepted from a content tool call or a status object in text."""
    item_id: str
    content: str
    replaced: Optional[str] = None  # Earlier content for the same id, if any


@dataclass(frozen=True)
class StreamFragment:
    """One incremental piece of a streamed model response."""
    text: str = ""
    reasoning: str = ""


@dataclass
class ToolCallRequest:
    """A single tool call requested by the LLM in a response."""
    call_id: str        # Opaque ID, used to correlate with tool results in the message history
    tool_name: str
    arguments: Dict[str, Any]


@dataclass
class LLMResponse:
    """Aggregate response from the LLM after a streamed chat turn.

    Either the LLM returns tool calls (``tool_calls`` non-empty) or it
    finalizes the turn with plain text.  ``reasoning`` carries any separate
    reasoning channel the backend streamed.
    """
    content: Optional[str]
    tool_calls: List[ToolCallRequest] = field(default_factory=list)
    reasoning: Optional[str] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class SessionMetrics:
    """Aggregate timing and call-count metrics for one session (seconds)."""
    total_time: float = 0.0
    planning_time: float = 0.0
    working_time: float = 0.0
    review_time: float = 0.0
    tool_call_time: float = 0.0
    tool_call_count: int = 0
    turn_count: int = 0
    degeneration_retries: int = 0

    @property
    def average_tool_call_time(self) -> float:
        if not self.tool_call_count:
            return 0.0
        return self.tool_call_time / self.tool_call_count


@dataclass
class SessionResult:
    """Outcome of one task loop session."""
    final_text: str
    phase: Phase
    extraction: Dict[str, str]
    title: Optional[str] = None
    planning_digest: Optional[str] = None
    metrics: SessionMetrics = field(default_factory=SessionMetrics)
    chunk_index: Optional[int] = None


@dataclass
class DocumentResult:
    """Outcome of running every chunk of a document in order."""
    family: str
    sessions: List[SessionResult] = field(default_factory=list)

    @property
    def extraction(self) -> Dict[str, str]:
        merged: Dict[str, str] = {}
        for session in self.sessions:
            merged.update(session.extraction)
        return merged

    @property
    def title(self) -> Optional[str]:
        for session in reversed(self.sessions):
            if session.title:
                return session.title
        return None
