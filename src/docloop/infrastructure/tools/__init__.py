from docloop.infrastructure.tools.registry import ToolRegistry, build_task_tool_registry
from docloop.infrastructure.tools.tool_defs import make_tool_def

__all__ = ["ToolRegistry", "build_task_tool_registry", "make_tool_def"]
