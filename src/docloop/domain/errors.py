"""Domain and application errors."""

from __future__ import annotations

from typing import Optional


class DocloopError(Exception):
    """Base for docloop errors."""
    pass


class UnknownTaskFamilyError(DocloopError):
    """No task family is registered under the requested name."""
    pass


class DegenerationError(DocloopError):
    """The model kept producing pathological repeated output for a chunk.

    Raised once the per-turn retry budget is exhausted.  ``chunk_index`` is
    ``None`` when the session was started without a chunk index.
    """

    def __init__(self, reason: str, chunk_index: Optional[int] = None):
        self.reason = reason
        self.chunk_index = chunk_index
        where = f"chunk {chunk_index}" if chunk_index is not None else "session"
        super().__init__(f"Degenerate model output in {where}: {reason}")


class LivenessError(DocloopError):
    """The turn ceiling was reached before the session reached the end phase."""

    def __init__(self, phase: str, turns: int):
        self.phase = phase
        self.turns = turns
        super().__init__(
            f"Session did not finish within {turns} turns (last phase: {phase!r})"
        )


class RequestAborted(DocloopError):
    """An in-flight model request was stopped because its abort signal fired."""
    pass


class SessionCancelled(Exception):
    """The caller cancelled the session.

    Not a ``DocloopError`` subclass: catch it in its own ``except`` clause
    to report user-cancelled work separately from failures.
    """

    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(reason)
