"""Task loop state machine: ``advance(state, event, policy) -> (state, effects)``.

Everything here is pure.  ``SessionState`` is immutable; each event returns a
new state plus a list of effects (messages to append, tools to dispatch,
items and titles to report, phase changes, completion).  The async task loop
feeds in events and performs the effects, so the whole protocol can be
exercised without a model or an event loop.

Phase changes requested through the phase tool, or announced in a JSON
status object in the final text, are queued as a pending path and applied
only when the model finalizes a turn with plain text.  Each step
of the path is validated against the family's transition table; the legal
prefix is applied and the first illegal step is rejected with a corrective
prompt naming the one legal next phase.  Entering ``end`` also requires the
verifier to report the chunk complete.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple, Union

from docloop.application import prompts
from docloop.application.governor import Reject, ToolCallGovernor
from docloop.application.stream_guard import GuardVerdict, Violation
from docloop.application.verifier import Verification, Verifier, format_ranges, verifier_for
from docloop.config.constants import MAX_CONSECUTIVE_PHASE_TURNS, MAX_DIGEST_TOOL_RESULT_CHARS
from docloop.domain import ExtractedItem, Phase, TaskFamily, ToolCallRequest

logger = logging.getLogger(__name__)

# Conventional tool names the loop inspects; every other tool result is opaque.
PHASE_TOOL = "update_task_status"
CONTENT_TOOL = "add_translation_batch"
TITLE_TOOL = "update_chapter_title"

# Content entry keys, long and short forms.
_ENTRY_ID_KEYS = ("paragraph_id", "id")
_ENTRY_INDEX_KEYS = ("index", "i")
_ENTRY_TEXT_KEYS = ("translated_text", "translation", "t")

# Keys of a status object written in plain text.
_TEXT_STATUS_KEYS = ("status", "s", "phase")
_TEXT_CONTENT_KEYS = ("paragraphs", "p", "items")
_TEXT_TITLE_KEYS = ("titleTranslation", "tt")


# ---------------------------------------------------------------------------
# Policy and state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SessionPolicy:
    """Fixed inputs of one session: family, chunk ids, tool governance, thresholds."""
    family: TaskFamily
    item_ids: Tuple[str, ...]
    governor: ToolCallGovernor
    verifier: Optional[Verifier] = None
    max_consecutive_phase_turns: int = MAX_CONSECUTIVE_PHASE_TURNS
    brief_planning: bool = False
    digest_tools: FrozenSet[str] = frozenset()
    phase_tool: str = PHASE_TOOL
    content_tool: str = CONTENT_TOOL
    title_tool: str = TITLE_TOOL

    def check(self, extraction: Mapping[str, str]) -> Verification:
        verifier = self.verifier or verifier_for(self.family)
        return verifier(self.item_ids, extraction)


@dataclass(frozen=True)
class SessionState:
    phase: Phase = Phase.PLANNING
    pending: Tuple[Phase, ...] = ()
    turn: int = 0
    extraction: Mapping[str, str] = field(default_factory=dict)
    title: Optional[str] = None
    tool_counts: Mapping[str, int] = field(default_factory=dict)
    consecutive: Mapping[Phase, int] = field(default_factory=dict)
    planning_notes: Tuple[str, ...] = ()
    planning_tool_results: Tuple[Tuple[str, str], ...] = ()
    planning_digest: Optional[str] = None
    productive_in_batch: bool = False
    lookup_in_brief_planning: bool = False
    last_text: str = ""

    @property
    def effective_phase(self) -> Phase:
        """The phase the model believes it is in: the last pending request, else the phase."""
        return self.pending[-1] if self.pending else self.phase

    @property
    def done(self) -> bool:
        return self.phase is Phase.END

    def stall_count(self, phase: Phase) -> int:
        return self.consecutive.get(phase, 0)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TurnStarted:
    pass


@dataclass(frozen=True)
class ToolCallsRequested:
    text: Optional[str]
    calls: Tuple[ToolCallRequest, ...]


@dataclass(frozen=True)
class ToolResultReceived:
    call: ToolCallRequest
    result: str


@dataclass(frozen=True)
class ToolDispatchFinished:
    pass


@dataclass(frozen=True)
class TurnFinalized:
    text: str


@dataclass(frozen=True)
class StreamViolated:
    text: str
    verdict: GuardVerdict


Event = Union[
    TurnStarted, ToolCallsRequested, ToolResultReceived, ToolDispatchFinished, TurnFinalized, StreamViolated,
]


# ---------------------------------------------------------------------------
# Effects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AppendMessage:
    message: Dict[str, Any]


@dataclass(frozen=True)
class DispatchTool:
    call: ToolCallRequest


@dataclass(frozen=True)
class RejectTool:
    call: ToolCallRequest
    reason: str


@dataclass(frozen=True)
class EmitItems:
    items: Tuple[ExtractedItem, ...]


@dataclass(frozen=True)
class EmitTitle:
    title: str


@dataclass(frozen=True)
class PhaseChanged:
    previous: Phase
    current: Phase
    forced: bool = False


@dataclass(frozen=True)
class ProtocolCorrected:
    """A protocol violation was answered with a corrective prompt (diagnostics only)."""
    kind: str
    detail: str


@dataclass(frozen=True)
class Finish:
    pass


Effect = Union[AppendMessage, DispatchTool, RejectTool, EmitItems, EmitTitle, PhaseChanged, ProtocolCorrected, Finish]
Transition = Tuple[SessionState, List[Effect]]


# ---------------------------------------------------------------------------
# Message builders (OpenAI chat-completions shape)
# ---------------------------------------------------------------------------

def make_assistant_text(content: str) -> Dict[str, Any]:
    return {"role": "assistant", "content": content}


def make_user(content: str) -> Dict[str, Any]:
    return {"role": "user", "content": content}


def make_assistant_tool_turn(content: Optional[str], tool_calls: Sequence[ToolCallRequest]) -> Dict[str, Any]:
    """Build the ``assistant`` message dict for a turn that contains tool calls."""
    return {
        "role": "assistant",
        "content": content or "",
        "tool_calls": [
            {
                "id": tc.call_id,
                "type": "function",
                "function": {
                    "name": tc.tool_name,
                    "arguments": json.dumps(tc.arguments, ensure_ascii=False),
                },
            }
            for tc in tool_calls
        ],
    }


def make_tool_result(call_id: str, content: str) -> Dict[str, Any]:
    """Build the ``tool`` message dict for a tool call result."""
    return {
        "role": "tool",
        "tool_call_id": call_id,
        "content": content,
    }


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------

def advance(state: SessionState, event: Event, policy: SessionPolicy) -> Transition:
    """Apply one event; return the next state and the effects to perform, in order."""
    if isinstance(event, TurnStarted):
        return replace(state, turn=state.turn + 1), []
    if isinstance(event, ToolCallsRequested):
        return _on_tool_calls(state, event, policy)
    if isinstance(event, ToolResultReceived):
        return _on_tool_result(state, event, policy)
    if isinstance(event, ToolDispatchFinished):
        return _on_dispatch_finished(state)
    if isinstance(event, TurnFinalized):
        return _on_turn_finalized(state, event, policy)
    if isinstance(event, StreamViolated):
        return _on_stream_violated(state, event, policy)
    raise TypeError(f"Unknown session event: {event!r}")


def _on_tool_calls(state: SessionState, event: ToolCallsRequested, policy: SessionPolicy) -> Transition:
    effects: List[Effect] = [AppendMessage(make_assistant_tool_turn(event.text, event.calls))]
    counts = dict(state.tool_counts)
    for call in event.calls:
        decision = policy.governor.authorize(call.tool_name, counts.get(call.tool_name, 0))
        if isinstance(decision, Reject):
            effects.append(RejectTool(call, decision.reason))
            body = json.dumps({"success": False, "error": decision.reason}, ensure_ascii=False)
            effects.append(AppendMessage(make_tool_result(call.call_id, body)))
            continue
        counts[call.tool_name] = counts.get(call.tool_name, 0) + 1
        effects.append(DispatchTool(call))
    return replace(state, tool_counts=counts, productive_in_batch=False, lookup_in_brief_planning=False), effects


def _on_tool_result(state: SessionState, event: ToolResultReceived, policy: SessionPolicy) -> Transition:
    call = event.call
    effects: List[Effect] = [AppendMessage(make_tool_result(call.call_id, event.result))]
    data = parse_tool_result(event.result)
    succeeded = data is not None and data.get("success") is True
    changes: Dict[str, Any] = {}

    if succeeded and call.tool_name == policy.phase_tool:
        requested = Phase.parse(data.get("new_status", call.arguments.get("new_status")))
        if requested is not None and requested != state.effective_phase:
            changes["pending"] = state.pending + (requested,)

    elif succeeded and call.tool_name == policy.title_tool:
        title = data.get("new_title") or call.arguments.get("new_title")
        if isinstance(title, str) and title.strip():
            changes["title"] = title.strip()
            effects.append(EmitTitle(title.strip()))

    elif succeeded and call.tool_name == policy.content_tool:
        extraction, emitted = _record_entries(state.extraction, resolve_entries(call.arguments, policy.item_ids))
        if emitted:
            changes["extraction"] = extraction
            effects.append(emitted)

    if state.phase is Phase.PLANNING and call.tool_name in policy.digest_tools:
        entry = (call.tool_name, event.result[:MAX_DIGEST_TOOL_RESULT_CHARS])
        changes["planning_tool_results"] = state.planning_tool_results + (entry,)
        if policy.brief_planning:
            changes["lookup_in_brief_planning"] = True

    if policy.governor.is_productive(call.tool_name) and not is_error_result(data):
        changes["productive_in_batch"] = True

    return replace(state, **changes), effects


def _on_dispatch_finished(state: SessionState) -> Transition:
    effects: List[Effect] = []
    changes: Dict[str, Any] = {"productive_in_batch": False, "lookup_in_brief_planning": False}
    if state.productive_in_batch:
        # Information-gathering progress: no phase counts as stalled.
        changes["consecutive"] = {}
    if state.lookup_in_brief_planning:
        effects.append(AppendMessage(make_user(prompts.planning_already_known())))
    return replace(state, **changes), effects


def _on_stream_violated(state: SessionState, event: StreamViolated, policy: SessionPolicy) -> Transition:
    verdict = event.verdict
    family = policy.family
    active = verdict.active_phase or state.effective_phase
    if verdict.violation is Violation.ILLEGAL_TRANSITION:
        requested = Phase.parse(verdict.requested) or active
        message = prompts.invalid_transition(active, requested, family.suggested_next(active))
    elif verdict.violation is Violation.INVALID_PHASE:
        message = prompts.invalid_phase(verdict.requested, list(Phase))
    elif verdict.violation is Violation.CONTENT_IN_WRONG_PHASE:
        message = prompts.content_in_wrong_phase(active, family.next_content_phase(active), family)
    else:
        raise ValueError(f"Not a recoverable stream violation: {verdict!r}")

    effects: List[Effect] = []
    if event.text:
        effects.append(AppendMessage(make_assistant_text(event.text)))
    effects.append(ProtocolCorrected(verdict.violation.value, verdict.reason))
    effects.append(AppendMessage(make_user(message)))
    return state, effects


def _on_turn_finalized(state: SessionState, event: TurnFinalized, policy: SessionPolicy) -> Transition:
    text = event.text
    family = policy.family
    effects: List[Effect] = []
    start_phase = state.phase

    announcement = parse_text_announcement(text, policy.item_ids)
    if announcement is not None:
        state, announced, message = _apply_text_announcement(state, announcement, policy)
        effects.extend(announced)
        if message is not None:
            state = replace(state, pending=(), last_text=text)
            effects.append(AppendMessage(make_assistant_text(text)))
            effects.append(AppendMessage(make_user(message)))
            return state, effects

    pending = state.pending
    state = replace(state, pending=(), last_text=text)

    for requested in pending:
        current = state.phase
        if requested == current:
            continue
        if not family.is_legal(current, requested):
            suggestion = family.suggested_next(current)
            effects.append(AppendMessage(make_assistant_text(text)))
            effects.append(ProtocolCorrected(
                "illegal_transition", f"{current.value} -> {requested.value}",
            ))
            effects.append(AppendMessage(make_user(prompts.invalid_transition(current, requested, suggestion))))
            return state, effects
        if requested is Phase.END and not policy.check(state.extraction).complete:
            # The phase policy below re-prompts for the missing items.
            effects.append(ProtocolCorrected("incomplete", f"{current.value} -> end refused"))
            break
        state, changed = _change_phase(state, requested, policy, text)
        effects.extend(changed)

    effects.append(AppendMessage(make_assistant_text(text)))
    state, policy_effects, message = _apply_phase_policy(state, policy, text)
    effects.extend(policy_effects)
    if message is None:
        return state, effects
    if state.phase != start_phase:
        message = f"{prompts.phase_changed(start_phase, state.phase, family)}\n{message}"
    effects.append(AppendMessage(make_user(message)))
    return state, effects


def _record_entries(
    extraction: Mapping[str, str],
    entries: Sequence[Tuple[str, str]],
) -> Tuple[Dict[str, str], Optional[EmitItems]]:
    """Last write wins; each item reports the content it replaced."""
    updated = dict(extraction)
    items: List[ExtractedItem] = []
    for item_id, content in entries:
        items.append(ExtractedItem(item_id=item_id, content=content, replaced=updated.get(item_id)))
        updated[item_id] = content
    return updated, (EmitItems(tuple(items)) if items else None)


def _apply_text_announcement(
    state: SessionState,
    announcement: TextAnnouncement,
    policy: SessionPolicy,
) -> Tuple[SessionState, List[Effect], Optional[str]]:
    """Record content and a title from the text, then queue its phase change.

    Content counts when the family does not police it, or when either the
    current phase or the announced one accepts content.  Otherwise nothing is
    applied and the returned message is the corrective prompt.
    """
    family = policy.family
    current = state.effective_phase
    effects: List[Effect] = []
    if announcement.entries:
        accepted = (
            not family.guards_content
            or family.permits_content(current)
            or (announcement.phase is not None and family.permits_content(announcement.phase))
        )
        if not accepted:
            effects.append(ProtocolCorrected(
                Violation.CONTENT_IN_WRONG_PHASE.value, f"content written during {current.value}",
            ))
            return state, effects, prompts.content_in_wrong_phase(
                current, family.next_content_phase(current), family,
            )
        extraction, emitted = _record_entries(state.extraction, announcement.entries)
        state = replace(state, extraction=extraction)
        effects.append(emitted)
    if announcement.title is not None:
        state = replace(state, title=announcement.title)
        effects.append(EmitTitle(announcement.title))
    if announcement.phase is not None and announcement.phase != current:
        state = replace(state, pending=state.pending + (announcement.phase,))
    return state, effects, None


def _change_phase(
    state: SessionState,
    new_phase: Phase,
    policy: SessionPolicy,
    text: str,
    forced: bool = False,
) -> Transition:
    previous = state.phase
    changes: Dict[str, Any] = {"phase": new_phase}
    if (
        previous is Phase.PLANNING
        and new_phase is policy.family.planning_exit
        and state.planning_digest is None
        and not policy.brief_planning
    ):
        changes["planning_digest"] = build_planning_digest(
            state.planning_notes + (text,), state.planning_tool_results,
        )
    return replace(state, **changes), [PhaseChanged(previous, new_phase, forced=forced)]


def _apply_phase_policy(
    state: SessionState,
    policy: SessionPolicy,
    text: str,
) -> Tuple[SessionState, List[Effect], Optional[str]]:
    """Count the turn against the current phase and pick the next prompt."""
    phase = state.phase
    family = policy.family
    limit = policy.max_consecutive_phase_turns
    streak = state.stall_count(phase) + 1
    state = replace(state, consecutive={phase: streak})

    if phase is Phase.PLANNING:
        if text.strip():
            state = replace(state, planning_notes=state.planning_notes + (text.strip(),))
        return state, [], prompts.planning(escalate=streak >= limit)

    if phase is Phase.WORKING:
        if streak >= limit and not state.extraction:
            return state, [], prompts.working_stalled()
        verification = policy.check(state.extraction)
        if verification.complete:
            return state, [], prompts.working_complete(family.suggested_next(Phase.WORKING))
        return state, [], prompts.working_continue(len(verification.missing_ids), len(policy.item_ids))

    if phase is Phase.REVIEW:
        verification = policy.check(state.extraction)
        if not verification.complete:
            state, effects = _change_phase(state, Phase.WORKING, policy, text, forced=True)
            state = replace(state, consecutive={})
            positions = [policy.item_ids.index(i) for i in verification.missing_ids]
            return state, effects, prompts.missing_items(format_ranges(positions), len(positions))
        if streak >= limit:
            return state, [], prompts.review_stalled()
        return state, [], prompts.review(family.suggested_next(Phase.REVIEW))

    return state, [Finish()], None


# ---------------------------------------------------------------------------
# Tool result helpers
# ---------------------------------------------------------------------------

def parse_tool_result(result: str) -> Optional[Dict[str, Any]]:
    """Decode a tool result as a JSON object, or ``None`` for anything else."""
    try:
        data = json.loads(result)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def is_error_result(data: Optional[Dict[str, Any]]) -> bool:
    if data is None:
        return False
    return "error" in data or data.get("success") is False


def _first(data: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _resolve_entry(entry: Any, item_ids: Sequence[str]) -> Optional[Tuple[str, str]]:
    if not isinstance(entry, dict):
        return None
    content = _first(entry, _ENTRY_TEXT_KEYS)
    if not isinstance(content, str) or not content.strip():
        return None
    item_id = _first(entry, _ENTRY_ID_KEYS)
    index = _first(entry, _ENTRY_INDEX_KEYS)
    if not item_id and isinstance(index, int) and not isinstance(index, bool) and 0 <= index < len(item_ids):
        item_id = item_ids[index]
    if not item_id:
        logger.debug("Skipping content entry without a resolvable id: %r", entry)
        return None
    return str(item_id), content


def resolve_entries(arguments: Mapping[str, Any], item_ids: Sequence[str]) -> List[Tuple[str, str]]:
    """Extract ``(item_id, content)`` pairs from content-tool arguments.

    Each entry names its item by ``paragraph_id`` or by ``index``, a 0-based
    position within the chunk's ``item_ids``.  Malformed entries and entries
    with blank content are skipped.
    """
    pairs: List[Tuple[str, str]] = []
    for entry in arguments.get("paragraphs") or []:
        pair = _resolve_entry(entry, item_ids)
        if pair is not None:
            pairs.append(pair)
    return pairs


@dataclass(frozen=True)
class TextAnnouncement:
    """A JSON status object written in the turn's final text."""
    phase: Optional[Phase] = None
    entries: Tuple[Tuple[str, str], ...] = ()
    title: Optional[str] = None


def parse_text_announcement(text: str, item_ids: Sequence[str]) -> Optional[TextAnnouncement]:
    """Read ``{"status": ..., "paragraphs": [...], "tt": ...}`` out of *text*.

    Short keys are accepted too (``s``, ``p`` with ``i``/``t`` entries).
    Entries naming ids outside the chunk are dropped.  Returns ``None`` when
    the text holds no such object.
    """
    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        data = json.loads(text[start:end + 1])
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    status = _first(data, _TEXT_STATUS_KEYS)
    phase = Phase.parse(status) if isinstance(status, str) else None
    known = set(item_ids)
    entries: List[Tuple[str, str]] = []
    raw_entries = _first(data, _TEXT_CONTENT_KEYS)
    for entry in raw_entries if isinstance(raw_entries, list) else []:
        pair = _resolve_entry(entry, item_ids)
        if pair is not None and pair[0] in known:
            entries.append(pair)
    title = _first(data, _TEXT_TITLE_KEYS)
    title = title.strip() if isinstance(title, str) and title.strip() else None

    if phase is None and not entries and title is None:
        return None
    return TextAnnouncement(phase=phase, entries=tuple(entries), title=title)

def build_planning_digest(
    statements: Sequence[str],
    tool_results: Sequence[Tuple[str, str]],
) -> Optional[str]:
    """Human-readable summary of what was said and gathered while planning."""
    parts: List[str] = []
    notes = [s.strip() for s in statements if s and s.strip()]
    if notes:
        parts.append("Planning notes:\n" + "\n".join(f"- {n}" for n in notes))
    if tool_results:
        parts.append("Context gathered:\n" + "\n".join(f"[{name}] {result}" for name, result in tool_results))
    return "\n\n".join(parts) or None
