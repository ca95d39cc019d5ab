"""In-process ``ToolExecutor``: tool name → (definition, handler)."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Tuple

from docloop.application.ports import SessionContext
from docloop.domain import ToolCallRequest
from docloop.infrastructure.tools import task_tools
from docloop.infrastructure.tools.tool_defs import (
    ADD_TRANSLATION_BATCH_DEF,
    UPDATE_CHAPTER_TITLE_DEF,
    UPDATE_TASK_STATUS_DEF,
)

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any], SessionContext], Any]


class ToolRegistry:
    """Holds tool definitions with their handlers and dispatches calls by name.

    Handlers are called as ``handler(arguments, context)`` and may be plain
    functions or coroutines.  Their result is serialized to JSON unless it is
    already a string.  Exceptions propagate to the session, which reports
    them to the model as error results.
    """

    def __init__(self) -> None:
        self._tools: Dict[str, Tuple[Dict[str, Any], ToolHandler]] = {}

    def register(self, definition: Dict[str, Any], handler: ToolHandler) -> None:
        name = (definition.get("function") or {}).get("name")
        if not name:
            raise ValueError("Tool definition has no function name")
        if name in self._tools:
            logger.debug("Replacing handler for tool %r", name)
        self._tools[name] = (definition, handler)

    @property
    def tool_names(self) -> List[str]:
        return list(self._tools)

    def definitions(self) -> List[Dict[str, Any]]:
        return [defn for defn, _ in self._tools.values()]

    async def dispatch(self, call: ToolCallRequest, context: SessionContext) -> str:
        if call.tool_name not in self._tools:
            return json.dumps({
                "success": False,
                "error": f"Unknown tool: {call.tool_name!r}. Available: {self.tool_names}",
            })
        _, handler = self._tools[call.tool_name]
        result = handler(dict(call.arguments), context)
        if asyncio.iscoroutine(result):
            result = await result
        if isinstance(result, str):
            return result
        return json.dumps(result, ensure_ascii=False)


def build_task_tool_registry() -> ToolRegistry:
    """Registry with the phase, content and title tools registered."""
    registry = ToolRegistry()
    registry.register(UPDATE_TASK_STATUS_DEF, task_tools.update_task_status)
    registry.register(ADD_TRANSLATION_BATCH_DEF, task_tools.add_translation_batch)
    registry.register(UPDATE_CHAPTER_TITLE_DEF, task_tools.update_chapter_title)
    return registry
