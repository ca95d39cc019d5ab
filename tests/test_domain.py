"""Tests for the domain layer: phases, task families, abort signals, errors."""
from __future__ import annotations

import asyncio

import pytest

from docloop.domain import (
    AbortSignal,
    DegenerationError,
    DocloopError,
    DocumentResult,
    LivenessError,
    Phase,
    SessionCancelled,
    SessionResult,
    TaskFamily,
    UnknownTaskFamilyError,
    get_family,
    list_families,
    phase_label,
    register_family,
)
from docloop.domain.task_family import WITH_REVIEW, WITHOUT_REVIEW


# ---------------------------------------------------------------------------
# Phase
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("raw,expected", [
    ("working", Phase.WORKING),
    (" Review ", Phase.REVIEW),
    (Phase.END, Phase.END),
    ("done", None),
    (None, None),
    (3, None),
])
def test_phase_parse(raw, expected):
    assert Phase.parse(raw) is expected


def test_phase_labels():
    assert phase_label(Phase.REVIEW) == "Reviewing"


# ---------------------------------------------------------------------------
# Task families
# ---------------------------------------------------------------------------

def test_translation_workflow_has_review():
    family = get_family("translation")
    assert family.has_review
    assert family.workflow == "planning → working → review → end"
    assert family.next_phases(Phase.REVIEW) == (Phase.END, Phase.WORKING)


def test_transition_legality():
    family = get_family("translation")
    assert family.is_legal(Phase.PLANNING, Phase.WORKING)
    assert family.is_legal(Phase.WORKING, Phase.WORKING)
    assert not family.is_legal(Phase.PLANNING, Phase.REVIEW)
    assert not family.is_legal(Phase.WORKING, Phase.END)
    assert family.is_legal(Phase.REVIEW, Phase.WORKING)
    assert not family.is_legal(Phase.END, Phase.PLANNING)


def test_suggested_next_is_first_successor():
    family = get_family("translation")
    assert family.suggested_next(Phase.PLANNING) is Phase.WORKING
    assert family.suggested_next(Phase.REVIEW) is Phase.END
    assert family.suggested_next(Phase.END) is None


def test_next_content_phase_heads_back_to_working():
    family = get_family("translation")
    assert family.next_content_phase(Phase.PLANNING) is Phase.WORKING
    assert family.next_content_phase(Phase.REVIEW) is Phase.WORKING
    # Nothing accepts content after end.
    assert family.next_content_phase(Phase.END) is None


def test_next_content_phase_follows_custom_content_phases():
    family = TaskFamily(
        name="annotate",
        label="Annotate",
        transitions=WITH_REVIEW,
        content_phases=frozenset({Phase.REVIEW}),
    )
    assert family.next_content_phase(Phase.PLANNING) is Phase.WORKING
    assert family.next_content_phase(Phase.WORKING) is Phase.REVIEW


def test_families_without_review():
    for name in ("polish", "proofreading", "chapter_summary"):
        family = get_family(name)
        assert not family.has_review
        assert family.is_legal(Phase.WORKING, Phase.END)
        assert not family.requires_full_coverage
    assert not get_family("chapter_summary").guards_content


def test_unknown_family_raises():
    with pytest.raises(UnknownTaskFamilyError, match="Registered"):
        get_family("haiku")


def test_register_family_makes_it_listed():
    family = register_family(TaskFamily(name="zz_test_family", label="Test", transitions=WITHOUT_REVIEW))
    assert get_family("zz_test_family") is family
    assert family in list_families()
    assert [f.name for f in list_families()] == sorted(f.name for f in list_families())


# ---------------------------------------------------------------------------
# AbortSignal
# ---------------------------------------------------------------------------

def test_abort_first_reason_wins_and_notifies_listeners():
    signal = AbortSignal()
    heard = []
    signal.add_listener(heard.append)
    signal.abort("first")
    signal.abort("second")
    assert signal.aborted
    assert signal.reason == "first"
    assert heard == ["first"]


def test_linked_signal_follows_parent_until_detached():
    parent = AbortSignal()
    child = AbortSignal.linked(parent, None)
    child.detach()
    parent.abort("late")
    assert not child.aborted

    child2 = AbortSignal.linked(parent)
    assert child2.aborted and child2.reason == "late"


def test_child_abort_does_not_reach_parent():
    parent = AbortSignal()
    child = AbortSignal.linked(parent)
    child.abort("guard")
    assert not parent.aborted
    parent.abort("user")
    assert child.reason == "guard"


@pytest.mark.asyncio
async def test_wait_returns_when_aborted():
    signal = AbortSignal()
    asyncio.get_running_loop().call_later(0.01, signal.abort, "stop")
    assert await asyncio.wait_for(signal.wait(), timeout=1.0) == "stop"


@pytest.mark.asyncio
async def test_wait_on_already_aborted_signal():
    signal = AbortSignal()
    signal.abort("done")
    assert await signal.wait() == "done"


# ---------------------------------------------------------------------------
# Errors and results
# ---------------------------------------------------------------------------

def test_error_messages_and_hierarchy():
    err = DegenerationError("character 'x' repeated 90 times", chunk_index=3)
    assert isinstance(err, DocloopError)
    assert "chunk 3" in str(err)
    assert err.reason.startswith("character")

    liveness = LivenessError("working", 40)
    assert isinstance(liveness, DocloopError)
    assert liveness.phase == "working" and liveness.turns == 40

    cancelled = SessionCancelled("user")
    assert not isinstance(cancelled, DocloopError)
    assert cancelled.reason == "user"


def test_document_result_merges_sessions():
    result = DocumentResult(family="translation", sessions=[
        SessionResult(final_text="", phase=Phase.END, extraction={"a": "A"}, title="One"),
        SessionResult(final_text="", phase=Phase.END, extraction={"b": "B"}),
    ])
    assert result.extraction == {"a": "A", "b": "B"}
    assert result.title == "One"
