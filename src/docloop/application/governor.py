"""Tool-call governance: allow-list, per-tool budgets, productive tools."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Union

from docloop.config.schema import DEFAULT_PRODUCTIVE_TOOLS, DEFAULT_TOOL_LIMITS


@dataclass(frozen=True)
class Allow:
    productive: bool = False


@dataclass(frozen=True)
class Reject:
    reason: str
    over_budget: bool = False


Decision = Union[Allow, Reject]


class ToolCallGovernor:
    """Stateless policy: the caller passes how often a tool was already called.

    The allow-list is fixed when the governor is built (the tools offered to
    the model for the session).  Tools without a limit are unbounded.
    """

    def __init__(
        self,
        allowed: Iterable[str],
        limits: Optional[Mapping[str, int]] = None,
        productive: Optional[Iterable[str]] = None,
    ) -> None:
        self._allowed = frozenset(allowed)
        self._limits = dict(DEFAULT_TOOL_LIMITS if limits is None else limits)
        self._productive = frozenset(DEFAULT_PRODUCTIVE_TOOLS if productive is None else productive)

    @property
    def allowed(self) -> frozenset:
        return self._allowed

    def limit_for(self, tool_name: str) -> Optional[int]:
        return self._limits.get(tool_name)

    def is_productive(self, tool_name: str) -> bool:
        return tool_name in self._productive

    def authorize(self, tool_name: str, calls_made: int = 0) -> Decision:
        if tool_name not in self._allowed:
            offered = ", ".join(sorted(self._allowed)) or "(none)"
            return Reject(
                reason=(
                    f"Tool {tool_name!r} is not available in this task. "
                    f"Use only the tools offered: {offered}."
                )
            )
        limit = self._limits.get(tool_name)
        if limit is not None and calls_made >= limit:
            return Reject(
                reason=(
                    f"Tool {tool_name!r} has reached its call limit ({limit}) for this task. "
                    "Do not call it again; proceed with the information already gathered."
                ),
                over_budget=True,
            )
        return Allow(productive=tool_name in self._productive)
