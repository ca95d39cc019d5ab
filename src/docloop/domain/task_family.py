"""Task families: per-kind transition tables and labels, held as data.

A family is a closed description of one kind of document task.  Adding a new
kind of task means registering another ``TaskFamily``; the session code never
branches on family names.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

from .errors import UnknownTaskFamilyError
from .models import Phase

TransitionTable = Mapping[Phase, Tuple[Phase, ...]]

_PHASE_LABELS: Dict[Phase, str] = {
    Phase.PLANNING: "Planning",
    Phase.WORKING: "Working",
    Phase.REVIEW: "Reviewing",
    Phase.END: "Done",
}

WITH_REVIEW: TransitionTable = {
    Phase.PLANNING: (Phase.WORKING,),
    Phase.WORKING: (Phase.REVIEW,),
    Phase.REVIEW: (Phase.END, Phase.WORKING),
    Phase.END: (),
}

# review keeps an exit so a model that wanders into it is not stuck.
WITHOUT_REVIEW: TransitionTable = {
    Phase.PLANNING: (Phase.WORKING,),
    Phase.WORKING: (Phase.END,),
    Phase.REVIEW: (Phase.END,),
    Phase.END: (),
}


@dataclass(frozen=True)
class TaskFamily:
    """One kind of task: its name, transition table and content rules.

    ``requires_full_coverage`` selects the completeness verifier: families
    that only submit changed items (polish, proofreading) or no items at all
    (summaries) never wait for every id.
    """

    name: str
    label: str
    transitions: TransitionTable
    requires_full_coverage: bool = True
    guards_content: bool = True
    content_phases: FrozenSet[Phase] = field(default_factory=lambda: frozenset({Phase.WORKING}))
    planning_exit: Phase = Phase.WORKING

    def next_phases(self, phase: Phase) -> Tuple[Phase, ...]:
        return tuple(self.transitions.get(phase, ()))

    def is_legal(self, current: Phase, requested: Phase) -> bool:
        """Self-transitions are legal; otherwise *requested* must be in the table."""
        if current == requested:
            return True
        return requested in self.next_phases(current)

    def suggested_next(self, phase: Phase) -> Optional[Phase]:
        successors = self.next_phases(phase)
        return successors[0] if successors else None

    def permits_content(self, phase: Phase) -> bool:
        return phase in self.content_phases

    def next_content_phase(self, phase: Phase) -> Optional[Phase]:
        """First step towards the nearest phase that accepts content.

        Falls back to ``suggested_next`` when no content phase is reachable.
        """
        seen = {phase}
        frontier = [(nxt, nxt) for nxt in self.next_phases(phase)]
        while frontier:
            step, target = frontier.pop(0)
            if target in seen:
                continue
            seen.add(target)
            if self.permits_content(target):
                return step
            frontier.extend((step, nxt) for nxt in self.next_phases(target))
        return self.suggested_next(phase)

    @property
    def has_review(self) -> bool:
        return any(Phase.REVIEW in targets for targets in self.transitions.values())

    @property
    def workflow(self) -> str:
        order = [Phase.PLANNING, Phase.WORKING]
        if self.has_review:
            order.append(Phase.REVIEW)
        order.append(Phase.END)
        return " → ".join(p.value for p in order)


def phase_label(phase: Phase) -> str:
    return _PHASE_LABELS[phase]


_REGISTRY: Dict[str, TaskFamily] = {}


def register_family(family: TaskFamily) -> TaskFamily:
    """Add *family* to the registry (replacing any family with the same name)."""
    _REGISTRY[family.name] = family
    return family


def get_family(name: str) -> TaskFamily:
    try:
        return _REGISTRY[name]
    except KeyError:
        raise UnknownTaskFamilyError(
            f"Unknown task family {name!r}. Registered: {sorted(_REGISTRY)}"
        ) from None


def list_families() -> List[TaskFamily]:
    return [_REGISTRY[name] for name in sorted(_REGISTRY)]


TRANSLATION = register_family(TaskFamily(
    name="translation",
    label="Translation",
    transitions=WITH_REVIEW,
))

POLISH = register_family(TaskFamily(
    name="polish",
    label="Polish",
    transitions=WITHOUT_REVIEW,
    requires_full_coverage=False,
))

PROOFREADING = register_family(TaskFamily(
    name="proofreading",
    label="Proofreading",
    transitions=WITHOUT_REVIEW,
    requires_full_coverage=False,
))

CHAPTER_SUMMARY = register_family(TaskFamily(
    name="chapter_summary",
    label="Chapter summary",
    transitions=WITHOUT_REVIEW,
    requires_full_coverage=False,
    guards_content=False,
))
