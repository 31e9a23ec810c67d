from __future__ import annotations

import logging
import os
import time
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from oroboreo.config import LoopConfig, WorkspacePaths
from oroboreo.costs import CostLedger
from oroboreo.tasks import TaskStoreParser, next_incomplete, read_tasks

logger = logging.getLogger(__name__)

ENV_EXPECTED_DURATION = "OREO_EXPECTED_TASK_DURATION_MS"
DEFAULT_EXPECTED_MS = 900_000
RECENT_FILE_WINDOW_SECONDS = 120 * 60
SKIPPED_DIRS = {".git", "node_modules", "archives", "__pycache__", ".venv"}


class SessionStateSource(Protocol):
    def snapshot_state(self) -> dict[str, Any]: ...


def format_elapsed(ms: int) -> str:
    seconds = max(ms, 0) // 1000
    minutes = seconds // 60
    hours = minutes // 60
    if hours:
        return f"{hours}h {minutes % 60}m"
    if minutes:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def tail_lines(path: Path, count: int = 5) -> list[str]:
    if not path.exists():
        return []
    try:
        content = path.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return []
    if not content:
        return []
    return [line.strip() for line in content.splitlines()[-count:]]


def last_modified_file(root: Path, now: float | None = None) -> dict[str, Any] | None:
    current = time.time() if now is None else now
    newest: tuple[float, str] | None = None
    for directory, dirnames, filenames in os.walk(root):
        dirnames[:] = [name for name in dirnames if name not in SKIPPED_DIRS]
        for filename in filenames:
            try:
                mtime = os.stat(os.path.join(directory, filename)).st_mtime
            except OSError:
                continue
            if current - mtime > RECENT_FILE_WINDOW_SECONDS:
                continue
            if newest is None or mtime > newest[0]:
                newest = (mtime, filename)
    if newest is None:
        return None
    return {"file": newest[1], "agoSeconds": int(current - newest[0])}


class FileStateSource:
    """Best-effort session state rebuilt from the working files alone."""

    def __init__(
        self,
        paths: WorkspacePaths,
        parser: TaskStoreParser | None = None,
        environ: Mapping[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self.paths = paths
        self.parser = parser
        self.environ = os.environ if environ is None else environ
        self.max_attempts = max_attempts or LoopConfig().max_retries_per_task

    def snapshot_state(self) -> dict[str, Any]:
        current = next_incomplete(read_tasks(self.paths.tasks, self.parser))
        return {
            "running": False,
            "currentTask": (
                {
                    "id": current.id,
                    "title": current.title,
                    "attempt": 1,
                    "maxAttempts": self.max_attempts,
                }
                if current is not None
                else None
            ),
            "taskStartedAt": None,
            "provider": (self.environ.get("AI_PROVIDER") or "unknown").lower(),
            "model": "unknown",
            "sessionCost": CostLedger(self.paths.costs).total_cost(),
            "branch": None,
        }


class StatusReporter:
    """Read-only projection over a session-state source plus the working files."""

    def __init__(
        self,
        paths: WorkspacePaths,
        source: SessionStateSource | None = None,
        parser: TaskStoreParser | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.paths = paths
        self.parser = parser
        self.environ = os.environ if environ is None else environ
        self.fallback = FileStateSource(paths, parser, self.environ)
        self.source = source or self.fallback

    def _expected_ms(self) -> int:
        raw = self.environ.get(ENV_EXPECTED_DURATION, "")
        try:
            return int(raw) if raw.strip() else DEFAULT_EXPECTED_MS
        except ValueError:
            logger.warning("Ignoring invalid %s=%r", ENV_EXPECTED_DURATION, raw)
            return DEFAULT_EXPECTED_MS

    def snapshot(self, now: datetime | None = None) -> dict[str, Any]:
        state = self.source.snapshot_state()
        fallback = state if self.source is self.fallback else self.fallback.snapshot_state()

        tasks = read_tasks(self.paths.tasks, self.parser)
        completed = sum(1 for task in tasks if task.completed)

        elapsed_ms = 0
        started_raw = state.get("taskStartedAt")
        if started_raw:
            started = datetime.fromisoformat(started_raw)
            moment = now or datetime.now(UTC)
            elapsed_ms = int((moment - started).total_seconds() * 1000)

        return {
            "running": bool(state.get("running")),
            "currentTask": state.get("currentTask") or fallback.get("currentTask"),
            "tasksComplete": f"{completed}/{len(tasks)}",
            "lastFileModified": last_modified_file(self.paths.project_root),
            "progressTail": tail_lines(self.paths.progress, 5),
            "elapsed": {"ms": elapsed_ms, "formatted": format_elapsed(elapsed_ms)},
            "expectedMs": self._expected_ms(),
            "provider": state.get("provider") or fallback.get("provider"),
            "model": state.get("model") or fallback.get("model"),
            "sessionCost": state.get("sessionCost") or fallback.get("sessionCost") or 0,
            "branch": state.get("branch"),
        }
