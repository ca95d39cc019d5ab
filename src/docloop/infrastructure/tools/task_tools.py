"""Handlers for the conventional task tools.

Handlers take the parsed arguments and the calling ``SessionContext`` and
return a result dict.  Bad arguments raise ``ValueError``; the session turns
that into an ``invalid_arguments`` result the model can read and correct.
The session only acts on results carrying ``"success": true``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Set

from docloop.application.ports import SessionContext
from docloop.config.constants import MAX_BATCH_SIZE
from docloop.domain import Phase

logger = logging.getLogger(__name__)


def update_task_status(arguments: Mapping[str, Any], context: SessionContext) -> Dict[str, Any]:
    raw = arguments.get("new_status")
    phase = Phase.parse(raw) if isinstance(raw, str) else None
    if phase is None:
        valid = ", ".join(p.value for p in Phase)
        raise ValueError(f"Unknown status {raw!r}. Valid statuses: {valid}.")
    return {"success": True, "new_status": phase.value, "previous_status": context.effective_phase.value}


def add_translation_batch(arguments: Mapping[str, Any], context: SessionContext) -> Dict[str, Any]:
    """Validate a content batch against the chunk; nothing is stored here.

    The session records the accepted entries from the call arguments once
    this returns successfully.
    """
    phase = context.effective_phase
    if not context.family.permits_content(phase):
        accepted = " or ".join(sorted(p.value for p in context.family.content_phases))
        raise ValueError(
            f"Text can only be submitted in the '{accepted}' phase; the task is in "
            f"'{phase.value}'. Call update_task_status first."
        )
    entries = arguments.get("paragraphs")
    if not isinstance(entries, list) or not entries:
        raise ValueError("'paragraphs' must be a non-empty list.")
    if len(entries) > MAX_BATCH_SIZE:
        raise ValueError(
            f"Batch has {len(entries)} paragraphs; submit at most {MAX_BATCH_SIZE} per call."
        )

    known = set(context.item_ids)
    seen: Set[str] = set()
    problems: List[str] = []
    for position, entry in enumerate(entries):
        if not isinstance(entry, dict):
            problems.append(f"entry {position} is not an object")
            continue
        text = entry.get("translated_text")
        if not isinstance(text, str):
            problems.append(f"entry {position} has no translated_text")
            continue
        if not text.strip():
            problems.append(f"entry {position} has empty translated_text")
            continue
        item_id = entry.get("paragraph_id")
        if not item_id:
            index = entry.get("index")
            if isinstance(index, int) and not isinstance(index, bool) and 0 <= index < len(context.item_ids):
                item_id = context.item_ids[index]
            else:
                problems.append(f"entry {position} has neither a paragraph_id nor a valid index")
                continue
        item_id = str(item_id)
        if item_id not in known:
            problems.append(f"paragraph_id {item_id!r} is not part of this text")
        elif item_id in seen:
            problems.append(f"paragraph_id {item_id!r} appears twice in this batch")
        seen.add(item_id)
    if problems:
        raise ValueError("Batch rejected: " + "; ".join(problems) + ".")

    logger.debug("Accepted batch of %d paragraphs (chunk %s)", len(entries), context.chunk_index)
    return {"success": True, "processed_count": len(entries)}


def update_chapter_title(arguments: Mapping[str, Any], context: SessionContext) -> Dict[str, Any]:  # noqa: ARG001
    title = arguments.get("new_title")
    if not isinstance(title, str) or not title.strip():
        raise ValueError("'new_title' must be a non-empty string.")
    return {"success": True, "new_title": title.strip()}
