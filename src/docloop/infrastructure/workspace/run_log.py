"""Append-only run log: one JSON record per line in ``runlog.jsonl``."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Dict, List

RUN_LOG_NAME = "runlog.jsonl"


def append_event(
    run_dir: str | Path,
    kind: str,
    payload: Dict[str, Any],
    step: str | None = None,
) -> None:
    """Append one ``{"ts", "kind", "step", "payload"}`` record to the run log."""
    run_path = Path(run_dir)
    run_path.mkdir(parents=True, exist_ok=True)
    record = {"ts": time.time(), "kind": kind, "step": step, "payload": payload}
    with (run_path / RUN_LOG_NAME).open("a", encoding="utf-8") as f:
        f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")


def read_events(run_dir: str | Path) -> List[Dict[str, Any]]:
    """All records of a run log, oldest first; empty when the log does not exist."""
    log_path = Path(run_dir) / RUN_LOG_NAME
    if not log_path.exists():
        return []
    with log_path.open(encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]
