"""Ports (abstract interfaces) used by the application layer.

Each port is a ``Protocol`` so the application depends only on the *shape* of the
collaborator, not on a concrete implementation.  Infrastructure adapters must satisfy
these shapes; the application never imports from interfaces.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from docloop.domain import AbortSignal, LLMResponse, Phase, RunId, StreamFragment, TaskFamily, ToolCallRequest

FragmentCallback = Callable[[StreamFragment], Any]


class ChatClient(Protocol):
    """Streaming LLM chat interface (OpenAI chat-completions API).

    Fragments are passed to ``on_fragment`` as they arrive, before the
    aggregate ``LLMResponse`` is returned.  When ``abort`` fires the client
    stops reading and raises ``RequestAborted``.
    """

    async def generate(
        self,
        messages: List[Dict[str, Any]],
        model: str,
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        on_fragment: Optional[FragmentCallback] = None,
        abort: Optional[AbortSignal] = None,
        temperature: float = 0.1,
        top_p: float = 0.9,
        max_tokens: int = 4096,
    ) -> LLMResponse: ...


@dataclass(frozen=True)
class SessionContext:
    """What a tool handler may know about the session calling it."""
    family: TaskFamily
    phase: Phase
    effective_phase: Phase  # Includes phase changes reported earlier in the same turn
    item_ids: Tuple[str, ...]
    chunk_index: Optional[int] = None


class ToolExecutor(Protocol):
    """Executes tool calls; results are serialized JSON strings."""

    def definitions(self) -> List[Dict[str, Any]]:
        """OpenAI-format function tool definitions offered to the model."""
        ...

    async def dispatch(self, call: ToolCallRequest, context: SessionContext) -> str: ...


class RunRepository(Protocol):
    """Create runs and append run-log events."""

    def create_run(self) -> Tuple[RunId, str]:
        """Create a new run directory; return (RunId, run_dir path)."""
        ...

    def append_event(
        self,
        run_id: RunId,
        kind: str,
        payload: Dict[str, Any],
        step: Optional[str] = None,
    ) -> None: ...
