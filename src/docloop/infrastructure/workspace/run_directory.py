"""Create run directories under a docloop workspace."""

from __future__ import annotations

import random
import time
from pathlib import Path

from docloop.domain import RunId


def run_directory(workspace_root: str | Path, run_id: RunId) -> Path:
    return Path(workspace_root).resolve() / "runs" / run_id.value


def create_run_directory(workspace_root: str | Path) -> tuple[RunId, str]:
    """Create ``workspace_root/runs/<run_id>/`` and return (RunId, run_dir path).

    Run ids are a UTC timestamp plus a random hex suffix, so they sort by
    creation time.
    """
    ts = time.strftime("%Y%m%d-%H%M%S", time.gmtime())
    run_id = RunId(ts + "-" + "".join(random.choices("abcdef0123456789", k=6)))
    run_dir = run_directory(workspace_root, run_id)
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_id, str(run_dir)
