"""OpenAI function tool definitions for the task tools."""

from __future__ import annotations

from typing import Any, Dict

from docloop.config.constants import MAX_BATCH_SIZE
from docloop.domain import Phase


def make_tool_def(
    name: str,
    description: str,
    parameters: Dict[str, Any],
) -> Dict[str, Any]:
    """Build an OpenAI function tool definition dict."""
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": parameters,
        },
    }


UPDATE_TASK_STATUS_DEF = make_tool_def(
    "update_task_status",
    "Report that the task moves to another phase. Call it once per phase change, "
    "in workflow order.",
    {
        "type": "object",
        "properties": {
            "new_status": {
                "type": "string",
                "enum": [p.value for p in Phase],
                "description": "The phase being entered.",
            },
        },
        "required": ["new_status"],
    },
)

ADD_TRANSLATION_BATCH_DEF = make_tool_def(
    "add_translation_batch",
    f"Submit finished text for up to {MAX_BATCH_SIZE} paragraphs of the current part. "
    "Only accepted in the working phase. Resubmitting a paragraph replaces its earlier text.",
    {
        "type": "object",
        "properties": {
            "paragraphs": {
                "type": "array",
                "maxItems": MAX_BATCH_SIZE,
                "items": {
                    "type": "object",
                    "properties": {
                        "paragraph_id": {
                            "type": "string",
                            "description": "The paragraph's [ID: ...] from the source.",
                        },
                        "index": {
                            "type": "integer",
                            "description": "0-based position within this part; used when paragraph_id is omitted.",
                        },
                        "translated_text": {"type": "string"},
                    },
                    "required": ["translated_text"],
                },
            },
        },
        "required": ["paragraphs"],
    },
)

UPDATE_CHAPTER_TITLE_DEF = make_tool_def(
    "update_chapter_title",
    "Set the processed title of the chapter.",
    {
        "type": "object",
        "properties": {
            "new_title": {"type": "string", "description": "The new chapter title."},
        },
        "required": ["new_title"],
    },
)
