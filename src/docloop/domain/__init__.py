"""Domain layer: entities, value objects, task families and errors. No I/O."""

from .cancellation import AbortSignal
from .errors import (
    DegenerationError,
    DocloopError,
    LivenessError,
    RequestAborted,
    SessionCancelled,
    UnknownTaskFamilyError,
)
from .models import (
    Chunk,
    DocumentResult,
    ExtractedItem,
    Item,
    LLMResponse,
    Phase,
    RunId,
    SessionMetrics,
    SessionResult,
    StreamFragment,
    ToolCallRequest,
    items_from_texts,
)
from .task_family import TaskFamily, get_family, list_families, phase_label, register_family

__all__ = [
    "AbortSignal",
    "Chunk",
    "DegenerationError",
    "DocloopError",
    "DocumentResult",
    "ExtractedItem",
    "Item",
    "LLMResponse",
    "LivenessError",
    "Phase",
    "RequestAborted",
    "RunId",
    "SessionCancelled",
    "SessionMetrics",
    "SessionResult",
    "StreamFragment",
    "TaskFamily",
    "ToolCallRequest",
    "UnknownTaskFamilyError",
    "get_family",
    "items_from_texts",
    "list_families",
    "phase_label",
    "register_family",
]
