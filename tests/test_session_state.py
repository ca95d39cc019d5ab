"""Tests for application/session_state.py: the pure task loop reducer.

No model and no event loop: events go in, (state, effects) come out.
"""
from __future__ import annotations

import json
from dataclasses import replace
from typing import List

import pytest

from docloop.application import prompts
from docloop.application.governor import ToolCallGovernor
from docloop.application.session_state import (
    AppendMessage,
    DispatchTool,
    EmitItems,
    EmitTitle,
    Finish,
    PhaseChanged,
    ProtocolCorrected,
    RejectTool,
    SessionPolicy,
    SessionState,
    StreamViolated,
    ToolCallsRequested,
    ToolDispatchFinished,
    ToolResultReceived,
    TurnFinalized,
    TurnStarted,
    advance,
    build_planning_digest,
    parse_text_announcement,
    resolve_entries,
)
from docloop.application.stream_guard import GuardVerdict, Violation
from docloop.domain import ExtractedItem, Phase, ToolCallRequest, get_family

_OK = json.dumps({"success": True})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _policy(ids=("a", "b", "c"), family: str = "translation", **kwargs) -> SessionPolicy:
    governor = ToolCallGovernor(
        allowed=["update_task_status", "add_translation_batch", "update_chapter_title", "list_terms"],
    )
    return SessionPolicy(family=get_family(family), item_ids=tuple(ids), governor=governor, **kwargs)


def _call(name: str, call_id: str = "c1", **arguments) -> ToolCallRequest:
    return ToolCallRequest(call_id=call_id, tool_name=name, arguments=arguments)


def _status_result(state, policy, new_status: str):
    c = _call("update_task_status", new_status=new_status)
    return advance(state, ToolResultReceived(c, json.dumps({"success": True, "new_status": new_status})), policy)


def _content_result(state, policy, *pairs, success: bool = True):
    c = _call(
        "add_translation_batch",
        paragraphs=[{"paragraph_id": pid, "translated_text": text} for pid, text in pairs],
    )
    return advance(state, ToolResultReceived(c, json.dumps({"success": success})), policy)


def _user_messages(effects) -> List[str]:
    return [e.message["content"] for e in effects if isinstance(e, AppendMessage) and e.message["role"] == "user"]


def _phase_changes(effects) -> List[PhaseChanged]:
    return [e for e in effects if isinstance(e, PhaseChanged)]


# ---------------------------------------------------------------------------
# Tool calls and governance
# ---------------------------------------------------------------------------

def test_turn_started_counts_turns():
    state, effects = advance(SessionState(), TurnStarted(), _policy())
    assert state.turn == 1
    assert effects == []


def test_authorized_calls_are_dispatched_after_assistant_message():
    policy = _policy()
    calls = (_call("update_task_status", new_status="working"),)
    state, effects = advance(SessionState(), ToolCallsRequested("thinking", calls), policy)
    assert isinstance(effects[0], AppendMessage)
    assert effects[0].message["role"] == "assistant"
    assert effects[0].message["tool_calls"][0]["function"]["name"] == "update_task_status"
    assert effects[1] == DispatchTool(calls[0])
    assert state.tool_counts == {"update_task_status": 1}


def test_unauthorized_call_yields_exactly_one_rejection_message():
    policy = _policy()
    bad = _call("delete_everything", call_id="x9")
    state, effects = advance(SessionState(), ToolCallsRequested(None, (bad,)), policy)
    assert not any(isinstance(e, DispatchTool) for e in effects)
    rejects = [e for e in effects if isinstance(e, RejectTool)]
    assert len(rejects) == 1
    tool_msgs = [e.message for e in effects if isinstance(e, AppendMessage) and e.message["role"] == "tool"]
    assert len(tool_msgs) == 1
    assert tool_msgs[0]["tool_call_id"] == "x9"
    body = json.loads(tool_msgs[0]["content"])
    assert body["success"] is False
    assert "not available" in body["error"]
    assert state.tool_counts == {}


def test_budget_exhausted_call_is_rejected():
    policy = _policy()
    state = SessionState(tool_counts={"list_terms": 3})
    _, effects = advance(state, ToolCallsRequested(None, (_call("list_terms"),)), policy)
    rejects = [e for e in effects if isinstance(e, RejectTool)]
    assert len(rejects) == 1
    assert "call limit" in rejects[0].reason


def test_mixed_batch_dispatches_allowed_and_rejects_others():
    policy = _policy()
    calls = (_call("list_terms", "c1"), _call("nope", "c2"), _call("update_chapter_title", "c3", new_title="T"))
    _, effects = advance(SessionState(), ToolCallsRequested(None, calls), policy)
    assert [e.call.call_id for e in effects if isinstance(e, DispatchTool)] == ["c1", "c3"]
    assert [e.call.call_id for e in effects if isinstance(e, RejectTool)] == ["c2"]


# ---------------------------------------------------------------------------
# Tool results
# ---------------------------------------------------------------------------

def test_phase_tool_queues_pending_change():
    policy = _policy()
    state, effects = _status_result(SessionState(), policy, "working")
    assert state.phase is Phase.PLANNING
    assert state.pending == (Phase.WORKING,)
    assert state.effective_phase is Phase.WORKING
    assert effects[0].message["role"] == "tool"


def test_failed_phase_tool_is_ignored():
    policy = _policy()
    c = _call("update_task_status", new_status="working")
    state, _ = advance(SessionState(), ToolResultReceived(c, json.dumps({"success": False, "error": "x"})), policy)
    assert state.pending == ()


def test_non_json_result_is_opaque():
    policy = _policy()
    c = _call("update_task_status", new_status="working")
    state, effects = advance(SessionState(), ToolResultReceived(c, "ok, done"), policy)
    assert state.pending == ()
    assert effects[0].message["content"] == "ok, done"


def test_resubmission_is_last_write_wins_and_both_are_reported():
    policy = _policy()
    state = SessionState(phase=Phase.WORKING)
    state, first = _content_result(state, policy, ("a", "first"))
    state, second = _content_result(state, policy, ("a", "second"))
    items_1 = [e for e in first if isinstance(e, EmitItems)][0].items
    items_2 = [e for e in second if isinstance(e, EmitItems)][0].items
    assert items_1[0].content == "first" and items_1[0].replaced is None
    assert items_2[0].content == "second" and items_2[0].replaced == "first"
    assert state.extraction == {"a": "second"}


def test_failed_content_result_extracts_nothing():
    policy = _policy()
    state, effects = _content_result(SessionState(phase=Phase.WORKING), policy, ("a", "A"), success=False)
    assert state.extraction == {}
    assert not any(isinstance(e, EmitItems) for e in effects)


def test_blank_content_is_not_recorded():
    policy = _policy()
    state, effects = _content_result(SessionState(phase=Phase.WORKING), policy, ("a", ""), ("b", "   "))
    assert state.extraction == {}
    assert not any(isinstance(e, EmitItems) for e in effects)
    assert not policy.check(state.extraction).complete


def test_entries_resolve_by_index():
    pairs = resolve_entries(
        {"paragraphs": [
            {"index": 1, "translated_text": "B"},
            {"paragraph_id": "c", "translated_text": "C"},
            {"index": 7, "translated_text": "out of range"},
            {"paragraph_id": "a"},
            "junk",
        ]},
        ("a", "b", "c"),
    )
    assert pairs == [("b", "B"), ("c", "C")]


def test_title_tool_emits_title():
    policy = _policy()
    c = _call("update_chapter_title", new_title="  The Storm ")
    state, effects = advance(SessionState(), ToolResultReceived(c, json.dumps({"success": True})), policy)
    assert state.title == "The Storm"
    assert EmitTitle("The Storm") in effects


# ---------------------------------------------------------------------------
# Finalized turns: phase path validation
# ---------------------------------------------------------------------------

def test_planning_to_working_applies_at_turn_end():
    policy = _policy()
    state, _ = _status_result(SessionState(turn=1), policy, "working")
    state, effects = advance(state, TurnFinalized("Plan: keep names as they are."), policy)
    assert state.phase is Phase.WORKING
    assert _phase_changes(effects) == [PhaseChanged(Phase.PLANNING, Phase.WORKING)]
    [message] = _user_messages(effects)
    assert message.startswith("Phase is now working")
    assert prompts.working_continue(3, 3) in message
    assert "keep names" in state.planning_digest


def test_planning_to_review_is_rejected_suggesting_working():
    policy = _policy()
    state, _ = _status_result(SessionState(), policy, "review")
    state, effects = advance(state, TurnFinalized("Skipping ahead."), policy)
    assert state.phase is Phase.PLANNING
    assert state.pending == ()
    assert _phase_changes(effects) == []
    assert any(isinstance(e, ProtocolCorrected) and e.kind == "illegal_transition" for e in effects)
    [message] = _user_messages(effects)
    assert "The only valid next phase is 'working'" in message


def test_chained_changes_in_one_turn_are_applied_in_order():
    policy = _policy()
    state = SessionState(extraction={"a": "A", "b": "B", "c": "C"})
    state, _ = _status_result(state, policy, "working")
    state, _ = _status_result(state, policy, "review")
    state, effects = advance(state, TurnFinalized("Done translating."), policy)
    assert state.phase is Phase.REVIEW
    assert _phase_changes(effects) == [
        PhaseChanged(Phase.PLANNING, Phase.WORKING),
        PhaseChanged(Phase.WORKING, Phase.REVIEW),
    ]
    assert prompts.review(Phase.END) in _user_messages(effects)[0]


def test_legal_prefix_is_kept_when_a_later_step_is_illegal():
    policy = _policy()
    state, _ = _status_result(SessionState(), policy, "working")
    state, _ = _status_result(state, policy, "end")
    state, effects = advance(state, TurnFinalized(""), policy)
    assert state.phase is Phase.WORKING
    assert "The only valid next phase is 'review'" in _user_messages(effects)[0]


def test_end_is_refused_while_items_are_missing():
    policy = _policy()
    state = SessionState(phase=Phase.REVIEW, extraction={"a": "A", "c": "C"})
    state, _ = _status_result(state, policy, "end")
    state, effects = advance(state, TurnFinalized("All good."), policy)
    assert not state.done
    assert state.phase is Phase.WORKING
    assert PhaseChanged(Phase.REVIEW, Phase.WORKING, forced=True) in effects
    assert not any(isinstance(e, Finish) for e in effects)
    [message] = _user_messages(effects)
    assert "positions 1" in message
    assert message.startswith("Phase is now working")


def test_end_with_full_coverage_finishes():
    policy = _policy()
    state = SessionState(phase=Phase.REVIEW, extraction={"a": "A", "b": "B", "c": "C"})
    state, _ = _status_result(state, policy, "end")
    state, effects = advance(state, TurnFinalized("Finished."), policy)
    assert state.done
    assert isinstance(effects[-1], Finish)
    assert _user_messages(effects) == []
    assert state.last_text == "Finished."


def test_family_without_coverage_may_end_from_working():
    policy = _policy(family="polish")
    state, _ = _status_result(SessionState(phase=Phase.WORKING), policy, "end")
    state, effects = advance(state, TurnFinalized("Nothing to change."), policy)
    assert state.done
    assert isinstance(effects[-1], Finish)


def test_review_with_missing_items_forces_working():
    policy = _policy()
    state = SessionState(phase=Phase.REVIEW, extraction={"a": "A"})
    state, effects = advance(state, TurnFinalized("Reviewing."), policy)
    assert state.phase is Phase.WORKING
    assert "positions 1-2" in _user_messages(effects)[0]


# ---------------------------------------------------------------------------
# Finalized turns: status objects in text
# ---------------------------------------------------------------------------

def test_status_written_in_text_changes_phase():
    policy = _policy()
    state, effects = advance(SessionState(), TurnFinalized('{"status": "working"}'), policy)
    assert state.phase is Phase.WORKING
    assert _phase_changes(effects) == [PhaseChanged(Phase.PLANNING, Phase.WORKING)]


def test_status_and_paragraphs_in_text_are_both_applied():
    policy = _policy()
    text = 'Starting now. {"status": "working", "paragraphs": [{"id": "a", "translation": "A"}]}'
    state, effects = advance(SessionState(), TurnFinalized(text), policy)
    assert state.phase is Phase.WORKING
    assert state.extraction == {"a": "A"}
    assert EmitItems((ExtractedItem(item_id="a", content="A"),)) in effects
    assert prompts.working_continue(2, 3) in _user_messages(effects)[0]


def test_short_form_status_object_maps_indices_and_title():
    policy = _policy()
    text = '{"s": "working", "p": [{"i": 1, "t": "B"}, {"i": 2, "t": "  "}, {"i": 9, "t": "?"}], "tt": " Fog "}'
    state, effects = advance(SessionState(), TurnFinalized(text), policy)
    assert state.extraction == {"b": "B"}
    assert state.title == "Fog"
    assert EmitTitle("Fog") in effects


def test_content_in_text_completes_before_the_phase_path_is_walked():
    policy = _policy()
    state = SessionState(phase=Phase.WORKING, extraction={"a": "A", "b": "B"})
    text = '{"status": "review", "paragraphs": [{"paragraph_id": "c", "translated_text": "C"}]}'
    state, effects = advance(state, TurnFinalized(text), policy)
    assert state.phase is Phase.REVIEW
    assert state.extraction == {"a": "A", "b": "B", "c": "C"}
    assert prompts.review(Phase.END) in _user_messages(effects)[0]


def test_illegal_status_in_text_is_corrected():
    policy = _policy()
    state, effects = advance(SessionState(), TurnFinalized('{"status": "end"}'), policy)
    assert state.phase is Phase.PLANNING
    assert "The only valid next phase is 'working'" in _user_messages(effects)[0]


def test_content_in_text_outside_working_is_refused():
    policy = _policy()
    text = '{"paragraphs": [{"id": "a", "translation": "A"}]}'
    state, effects = advance(SessionState(turn=1), TurnFinalized(text), policy)
    assert state.extraction == {}
    assert state.phase is Phase.PLANNING
    assert any(isinstance(e, ProtocolCorrected) and e.kind == "content_in_wrong_phase" for e in effects)
    assert "set the phase to 'working'" in _user_messages(effects)[0]


def test_family_without_content_guard_accepts_text_content_anywhere():
    policy = _policy(family="chapter_summary")
    text = '{"paragraphs": [{"id": "a", "translation": "Summary."}]}'
    state, _ = advance(SessionState(), TurnFinalized(text), policy)
    assert state.extraction == {"a": "Summary."}


def test_plain_text_and_unrelated_json_are_ignored():
    assert parse_text_announcement("Plan: keep names.", ("a",)) is None
    assert parse_text_announcement('{"note": "nothing here"}', ("a",)) is None
    assert parse_text_announcement("{broken", ("a",)) is None


# ---------------------------------------------------------------------------
# Stall handling
# ---------------------------------------------------------------------------

def test_planning_reprompt_escalates():
    policy = _policy()
    state, effects = advance(SessionState(), TurnFinalized("Thinking..."), policy)
    assert _user_messages(effects) == [prompts.planning(escalate=False)]
    state, effects = advance(state, TurnFinalized("Still thinking..."), policy)
    assert _user_messages(effects) == [prompts.planning(escalate=True)]
    assert state.planning_notes == ("Thinking...", "Still thinking...")


def test_working_without_results_is_stalled():
    policy = _policy()
    state = SessionState(phase=Phase.WORKING)
    state, _ = advance(state, TurnFinalized("I will start."), policy)
    _, effects = advance(state, TurnFinalized("Starting now."), policy)
    assert _user_messages(effects) == [prompts.working_stalled()]


def test_working_complete_asks_for_review():
    policy = _policy()
    state = SessionState(phase=Phase.WORKING, extraction={"a": "A", "b": "B", "c": "C"})
    _, effects = advance(state, TurnFinalized("All done."), policy)
    assert _user_messages(effects) == [prompts.working_complete(Phase.REVIEW)]


def test_productive_tool_resets_stall_counters():
    policy = _policy()
    state = SessionState(consecutive={Phase.PLANNING: 1})
    c = _call("list_terms")
    state, _ = advance(state, ToolCallsRequested(None, (c,)), policy)
    state, _ = advance(state, ToolResultReceived(c, json.dumps({"terms": []})), policy)
    state, _ = advance(state, ToolDispatchFinished(), policy)
    assert state.consecutive == {}


def test_failed_productive_tool_does_not_reset():
    policy = _policy()
    state = SessionState(consecutive={Phase.PLANNING: 1})
    c = _call("list_terms")
    state, _ = advance(state, ToolCallsRequested(None, (c,)), policy)
    state, _ = advance(state, ToolResultReceived(c, json.dumps({"error": "boom"})), policy)
    state, _ = advance(state, ToolDispatchFinished(), policy)
    assert state.consecutive == {Phase.PLANNING: 1}


# ---------------------------------------------------------------------------
# Planning digest
# ---------------------------------------------------------------------------

def test_digest_collects_planning_tool_results():
    policy = _policy(digest_tools=frozenset({"list_terms"}))
    c = _call("list_terms")
    state, _ = advance(SessionState(), ToolResultReceived(c, '{"terms": ["Avalon"]}'), policy)
    state, _ = _status_result(state, policy, "working")
    state, _ = advance(state, TurnFinalized("Use the glossary."), policy)
    assert "[list_terms]" in state.planning_digest
    assert "Avalon" in state.planning_digest
    assert "Use the glossary." in state.planning_digest


def test_brief_planning_reminds_model_after_lookup():
    policy = _policy(digest_tools=frozenset({"list_terms"}), brief_planning=True)
    c = _call("list_terms")
    state, _ = advance(SessionState(), ToolCallsRequested(None, (c,)), policy)
    state, _ = advance(state, ToolResultReceived(c, '{"terms": []}'), policy)
    state, effects = advance(state, ToolDispatchFinished(), policy)
    assert _user_messages(effects) == [prompts.planning_already_known()]

    state, _ = _status_result(state, policy, "working")
    state, _ = advance(state, TurnFinalized("ok"), policy)
    assert state.planning_digest is None


def test_build_planning_digest_empty():
    assert build_planning_digest([" ", ""], []) is None


# ---------------------------------------------------------------------------
# Stream violations
# ---------------------------------------------------------------------------

def test_stream_violation_appends_partial_and_correction():
    policy = _policy()
    verdict = GuardVerdict(
        violation=Violation.ILLEGAL_TRANSITION,
        reason="illegal transition planning -> review",
        active_phase=Phase.PLANNING,
        requested="review",
    )
    state = SessionState(turn=2)
    new_state, effects = advance(state, StreamViolated('{"status": "review"', verdict), policy)
    assert new_state == state
    assert effects[0].message == {"role": "assistant", "content": '{"status": "review"'}
    assert "The only valid next phase is 'working'" in _user_messages(effects)[0]


def test_content_violation_names_the_way_out():
    policy = _policy()
    verdict = GuardVerdict(violation=Violation.CONTENT_IN_WRONG_PHASE, reason="x", active_phase=Phase.PLANNING)
    _, effects = advance(SessionState(), StreamViolated("", verdict), policy)
    assert [e.message["role"] for e in effects if isinstance(e, AppendMessage)] == ["user"]
    assert "'working'" in _user_messages(effects)[0]


def test_content_violation_during_review_points_back_to_working():
    policy = _policy()
    verdict = GuardVerdict(violation=Violation.CONTENT_IN_WRONG_PHASE, reason="x", active_phase=Phase.REVIEW)
    _, effects = advance(SessionState(phase=Phase.REVIEW), StreamViolated("", verdict), policy)
    [message] = _user_messages(effects)
    assert "set the phase to 'working' first" in message
    assert "'end'" not in message


def test_degeneration_is_not_a_protocol_violation():
    verdict = GuardVerdict(violation=Violation.DEGENERATION, reason="x")
    with pytest.raises(ValueError):
        advance(SessionState(), StreamViolated("xxx", verdict), _policy())


def test_state_is_immutable():
    state = SessionState()
    new_state, _ = advance(state, TurnStarted(), _policy())
    assert state.turn == 0
    assert new_state is not state
    assert replace(new_state, turn=0) == state
