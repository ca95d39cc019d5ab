"""File-system run repository; implements the ``RunRepository`` port."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

from docloop.domain import RunId

from .run_directory import create_run_directory, run_directory
from .run_log import append_event as append_run_log_event


class FileSystemRunRepository:
    """Creates runs under ``<workspace_root>/runs`` and appends events to their run logs."""

    def __init__(self, workspace_root: str = ".docloop"):
        self._workspace_root = Path(workspace_root)

    def create_run(self) -> tuple[RunId, str]:
        return create_run_directory(self._workspace_root)

    def run_dir(self, run_id: RunId) -> Path:
        return run_directory(self._workspace_root, run_id)

    def append_event(
        self,
        run_id: RunId,
        kind: str,
        payload: Dict[str, Any],
        step: str | None = None,
    ) -> None:
        append_run_log_event(self.run_dir(run_id), kind, payload, step)
