"""Completeness checks for a chunk's extracted items."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, List, Mapping, Sequence, Tuple

from docloop.domain import TaskFamily


@dataclass(frozen=True)
class Verification:
    complete: bool
    missing_ids: Tuple[str, ...] = ()


Verifier = Callable[[Sequence[str], Mapping[str, str]], Verification]


def verify(expected_ids: Sequence[str], produced: Mapping[str, str]) -> Verification:
    """Report which of *expected_ids* have no entry in *produced*, in order."""
    missing = tuple(item_id for item_id in expected_ids if item_id not in produced)
    return Verification(complete=not missing, missing_ids=missing)


def always_complete(expected_ids: Sequence[str], produced: Mapping[str, str]) -> Verification:  # noqa: ARG001
    """For families that submit only changed items, or none at all."""
    return Verification(complete=True)


def verifier_for(family: TaskFamily) -> Verifier:
    return verify if family.requires_full_coverage else always_complete


def format_ranges(positions: Iterable[int]) -> str:
    """Collapse integer positions into ``"1-3, 7, 9-10"``."""
    ordered = sorted(set(positions))
    if not ordered:
        return ""
    spans: List[str] = []
    start = prev = ordered[0]
    for n in ordered[1:]:
        if n == prev + 1:
            prev = n
            continue
        spans.append(f"{start}-{prev}" if start != prev else f"{start}")
        start = prev = n
    spans.append(f"{start}-{prev}" if start != prev else f"{start}")
    return ", ".join(spans)
