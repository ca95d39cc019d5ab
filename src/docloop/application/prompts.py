"""Conversation text the session injects: opening messages and corrective prompts.

Every corrective message names the phase the model should move to next.
"""

from __future__ import annotations

from typing import Optional, Sequence

from docloop.domain import Chunk, Phase, TaskFamily, phase_label


def system_prompt(family: TaskFamily, phase_tool: str, content_tool: str) -> str:
    return (
        f"You are carrying out a {family.label.lower()} task on a numbered list of "
        f"paragraphs. Workflow: {family.workflow}.\n"
        f"- Report every phase change with the {phase_tool} tool.\n"
        f"- Submit results only in the working phase, with the {content_tool} tool; "
        "identify each paragraph by its ID (or by its 0-based position in this chunk).\n"
        "- Resubmitting a paragraph replaces its earlier result.\n"
        "- Use only the tools you are offered."
    )


def chunk_prompt(
    family: TaskFamily,
    chunk: Chunk,
    chunk_count: int,
    planning_digest: Optional[str] = None,
) -> str:
    header = f"{family.label}: part {chunk.index + 1} of {chunk_count} ({len(chunk.item_ids)} paragraphs)."
    if planning_digest:
        return (
            f"{header}\n\n"
            "Planning for this document is already done; its notes are below. "
            "Skip repeat lookups: confirm the plan briefly and move to the working phase.\n\n"
            f"[Planning notes]\n{planning_digest}\n\n"
            f"[Paragraphs]\n{chunk.text}"
        )
    return (
        f"{header}\n\n"
        "Start in the planning phase: gather the context you need, then move to the working phase.\n\n"
        f"[Paragraphs]\n{chunk.text}"
    )


def phase_changed(previous: Phase, current: Phase, family: TaskFamily) -> str:
    nxt = family.suggested_next(current)
    tail = f" Next phase: {nxt.value}." if nxt else ""
    return f"Phase is now {current.value} ({phase_label(current)}), was {previous.value}.{tail}"


def planning(escalate: bool) -> str:
    if escalate:
        return (
            "You have spent too long planning. Stop gathering context now: "
            "set the phase to 'working' and start submitting results immediately."
        )
    return "When planning is complete, set the phase to 'working' and start submitting results."


def working_stalled() -> str:
    return (
        "No results have been submitted yet. Produce output now: submit results for the "
        "paragraphs of this chunk (or, if none need changes, move to the next phase)."
    )


def working_complete(next_phase: Optional[Phase]) -> str:
    target = next_phase.value if next_phase else "end"
    return f"All paragraphs of this chunk have results. Set the phase to '{target}'."


def working_continue(missing: int, total: int) -> str:
    return (
        f"{missing} of {total} paragraphs still have no result. "
        "Continue submitting results for the remaining paragraphs."
    )


def missing_items(ranges: str, missing: int) -> str:
    return (
        f"{missing} paragraphs are still missing (positions {ranges}). "
        "The phase has been set back to 'working': submit the missing paragraphs."
    )


def review(next_phase: Optional[Phase]) -> str:
    target = next_phase.value if next_phase else "end"
    return (
        "Review your results. Resubmit any paragraph that needs a correction, "
        f"then set the phase to '{target}'."
    )


def review_stalled() -> str:
    return "Review is taking too long. If no corrections remain, set the phase to 'end' now."


def invalid_transition(current: Phase, requested: Phase, suggestion: Optional[Phase]) -> str:
    nxt = suggestion.value if suggestion else current.value
    return (
        f"Invalid phase change: {current.value} -> {requested.value} is not allowed. "
        f"The only valid next phase is '{nxt}'."
    )


def invalid_phase(value: Optional[str], allowed: Sequence[Phase]) -> str:
    names = ", ".join(p.value for p in allowed)
    return f"{value!r} is not a valid phase. Valid phases: {names}."


def content_in_wrong_phase(active: Phase, suggestion: Optional[Phase], family: TaskFamily) -> str:
    nxt = suggestion.value if suggestion else "working"
    accepted = " or ".join(sorted(p.value for p in family.content_phases)) or "working"
    return (
        f"You produced results while in the {active.value} phase. Results are only accepted "
        f"in the {accepted} phase: set the phase to '{nxt}' first, then submit with the tool."
    )


def planning_already_known() -> str:
    return (
        "Planning notes from an earlier part of this document are already provided. "
        "Avoid repeating lookups unless something is genuinely missing; move to 'working'."
    )
