import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

from oroboreo.config import WorkspacePaths
from oroboreo.loop import SessionState
from oroboreo.status import StatusReporter, format_elapsed, tail_lines

TASKS = """**Session**: status-check

- [x] **Task 1: Done already**
- [ ] **Task 2: Next up**
- [ ] **Task 3: Later**
"""


def _workspace(tmp_path: Path) -> WorkspacePaths:
    paths = WorkspacePaths.from_root(tmp_path)
    paths.workdir.mkdir(parents=True)
    paths.tasks.write_text(TASKS, encoding="utf-8")
    paths.progress.write_text("\n".join(f"line {index}" for index in range(1, 9)) + "\n")
    paths.costs.write_text(
        json.dumps({"session": {"startTime": "x", "totalCost": 0.25}, "tasks": []}),
        encoding="utf-8",
    )
    return paths


def test_format_elapsed() -> None:
    assert format_elapsed(3_900_000) == "1h 5m"
    assert format_elapsed(90_000) == "1m 30s"
    assert format_elapsed(4_500) == "4s"
    assert format_elapsed(-10) == "0s"


def test_tail_lines(tmp_path: Path) -> None:
    assert tail_lines(tmp_path / "missing.txt") == []
    path = tmp_path / "progress.txt"
    path.write_text("a\nb\nc\n", encoding="utf-8")
    assert tail_lines(path, 2) == ["b", "c"]


def test_snapshot_from_files_when_loop_is_not_running(tmp_path: Path) -> None:
    paths = _workspace(tmp_path)

    snapshot = StatusReporter(paths, environ={"AI_PROVIDER": "Bedrock"}).snapshot()

    assert snapshot["running"] is False
    assert snapshot["tasksComplete"] == "1/3"
    assert snapshot["currentTask"]["id"] == 2
    assert snapshot["currentTask"]["title"] == "Next up"
    assert snapshot["provider"] == "bedrock"
    assert snapshot["sessionCost"] == 0.25
    assert snapshot["progressTail"] == ["line 4", "line 5", "line 6", "line 7", "line 8"]
    assert snapshot["expectedMs"] == 900_000
    assert snapshot["elapsed"] == {"ms": 0, "formatted": "0s"}
    recent = snapshot["lastFileModified"]["file"]
    assert recent in {"cookie-crumbs.md", "progress.txt", "costs.json"}


def test_snapshot_from_live_session_state(tmp_path: Path) -> None:
    paths = _workspace(tmp_path)
    now = datetime(2026, 1, 5, 10, 30, tzinfo=UTC)
    state = SessionState(
        running=True,
        current_task_id=2,
        current_task_title="Next up",
        attempt=2,
        max_attempts=5,
        task_started_at=now - timedelta(seconds=90),
        provider="subscription",
        model="Claude Haiku 4.5",
        session_cost=0.5,
        branch="oreo-status-check-2026-01-05T10-00-00",
    )

    snapshot = StatusReporter(
        paths, source=state, environ={"OREO_EXPECTED_TASK_DURATION_MS": "600000"}
    ).snapshot(now=now)

    assert snapshot["running"] is True
    assert snapshot["currentTask"] == {"id": 2, "title": "Next up", "attempt": 2, "maxAttempts": 5}
    assert snapshot["elapsed"] == {"ms": 90_000, "formatted": "1m 30s"}
    assert snapshot["expectedMs"] == 600_000
    assert snapshot["model"] == "Claude Haiku 4.5"
    assert snapshot["sessionCost"] == 0.5
    assert snapshot["branch"] == "oreo-status-check-2026-01-05T10-00-00"


def test_invalid_expected_duration_falls_back(tmp_path: Path) -> None:
    paths = _workspace(tmp_path)

    snapshot = StatusReporter(
        paths, environ={"OREO_EXPECTED_TASK_DURATION_MS": "soon"}
    ).snapshot()

    assert snapshot["expectedMs"] == 900_000
