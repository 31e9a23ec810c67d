import json
import logging
import subprocess
from datetime import UTC, datetime
from pathlib import Path

import pytest

from oroboreo.archive import (
    FEEDBACK_TEMPLATE,
    ArchiveManager,
    is_test_reusable,
    task_store_template,
)
from oroboreo.config import GitConfig, WorkspacePaths
from oroboreo.state import GitRepository
from oroboreo.tasks import count_task_lines, read_tasks

TASKS = """# Cookie Crumbs

**Session**: auth-refactor
**Created**: 2026-01-24 18:09

## Tasks

- [x] **Task 1: Set up schema**
- [ ] **Task 2: Wire login**
"""

COSTS = {
    "session": {"startTime": "2026-01-24T18:09:00.000Z", "totalCost": 0.0123},
    "tasks": [{"taskId": 1, "model": "Claude Haiku 4.5", "totalCostUSD": 0.0123}],
}

NOW = datetime(2026, 2, 1, 12, 0, tzinfo=UTC)


def _workspace(tmp_path: Path) -> WorkspacePaths:
    paths = WorkspacePaths.from_root(tmp_path)
    paths.workdir.mkdir(parents=True, exist_ok=True)
    paths.tasks.write_text(TASKS, encoding="utf-8")
    paths.progress.write_text("# Progress\nLearned about auth.\n", encoding="utf-8")
    paths.costs.write_text(json.dumps(COSTS), encoding="utf-8")
    paths.log.write_text(
        "[2026-01-24T18:10:00.000Z] [INFO] Task 1: Set up schema\n", encoding="utf-8"
    )
    paths.feedback.write_text("Looks good.\n", encoding="utf-8")
    paths.prompt.write_text("stale prompt", encoding="utf-8")
    return paths


def _init_git_repo(repo_path: Path) -> None:
    for args in (
        ["git", "init"],
        ["git", "config", "user.email", "test@example.com"],
        ["git", "config", "user.name", "Test User"],
    ):
        subprocess.run(args, cwd=repo_path, check=True, text=True, capture_output=True)
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "README.md"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"], cwd=repo_path, check=True, text=True, capture_output=True
    )


def _manager(paths: WorkspacePaths, repo: GitRepository | None = None) -> ArchiveManager:
    return ArchiveManager(paths, GitConfig(auto_create_pr=False), repo)


@pytest.mark.parametrize(
    ("filename", "content", "expected"),
    [
        ("verify-auth.js", "", True),
        ("check-api-health.js", "await fetch(url)", True),
        ("validate-db-schema.py", "", True),
        ("test-login-flow.sh", "", True),
        ("verify-task-36-fix.js", "", False),
        ("verify-2026-01-05.js", "", False),
        ("notes.js", "", False),
        ("verify-auth.js", "const userId = 42", False),
        ("verify-auth.js", "// temporary check", False),
        ("verify-auth.js", "retry with timestamp", True),
    ],
)
def test_test_script_classification(filename: str, content: str, expected: bool) -> None:
    assert is_test_reusable(filename, content) is expected


def test_archive_paths_are_unique(tmp_path: Path) -> None:
    paths = _workspace(tmp_path)
    manager = _manager(paths)

    first = manager.allocate_path(NOW)
    second = manager.allocate_path(NOW)

    expected = paths.archives / "2026" / "01" / "2026-01-24-18-09-auth-refactor"
    assert first == expected
    assert second == expected.with_name("2026-01-24-18-09-auth-refactor_1")
    assert first.is_dir() and second.is_dir()


def test_archive_copies_files_verbatim_and_writes_summary(tmp_path: Path) -> None:
    paths = _workspace(tmp_path)
    before = {path.name: path.read_text(encoding="utf-8") for path in _manager(paths).working_files}

    result = _manager(paths).archive(now=NOW)

    assert result is not None
    assert result.session_name == "auth-refactor"
    assert sorted(result.archived_files) == sorted(before)
    for name, content in before.items():
        assert (result.path / name).read_text(encoding="utf-8") == content
    summary = (result.path / "SUMMARY.md").read_text(encoding="utf-8")
    assert "## Session: auth-refactor" in summary
    assert "**Tasks Completed:** 1/2" in summary
    assert "**Total Cost:** $0.0123" in summary
    assert "- Claude Haiku 4.5: 1 tasks" in summary
    assert paths.tasks.read_text(encoding="utf-8") == TASKS


def test_archive_with_reset_writes_fresh_templates(tmp_path: Path) -> None:
    paths = _workspace(tmp_path)

    result = _manager(paths).archive(reset=True, now=NOW)

    assert result is not None and result.reset
    assert paths.tasks.read_text(encoding="utf-8") == task_store_template("2026-02-01")
    assert read_tasks(paths.tasks) == []
    assert count_task_lines(paths.tasks.read_text(encoding="utf-8")) == (0, 0)
    assert paths.feedback.read_text(encoding="utf-8") == FEEDBACK_TEMPLATE
    assert json.loads(paths.costs.read_text(encoding="utf-8"))["session"]["totalCost"] == 0
    assert paths.log.read_text(encoding="utf-8") == ""
    assert not paths.prompt.exists()
    progress = paths.progress.read_text(encoding="utf-8")
    assert (
        'Session "auth-refactor" completed 1/2 tasks. '
        "See archives/2026/01/2026-01-24-18-09-auth-refactor for details."
    ) in progress
    assert "Previous session archived: archives/2026/01/2026-01-24-18-09-auth-refactor" in progress


def test_generated_tests_are_sorted(tmp_path: Path) -> None:
    paths = _workspace(tmp_path)
    paths.tests.mkdir()
    paths.reusable_tests.mkdir()
    (paths.tests / "verify-auth.js").write_text("console.log('ok')\n", encoding="utf-8")
    (paths.tests / "verify-task-3-fix.js").write_text("console.log('fix')\n", encoding="utf-8")
    (paths.tests / "check-api-health.py").write_text("print('new')\n", encoding="utf-8")
    (paths.reusable_tests / "check-api-health.py").write_text("print('kept')\n", encoding="utf-8")

    result = _manager(paths).archive(now=NOW)

    assert result is not None
    assert result.reusable_tests == ["verify-auth.js"]
    assert result.archived_tests == ["verify-task-3-fix.js"]
    assert (paths.reusable_tests / "verify-auth.js").exists()
    assert (paths.reusable_tests / "check-api-health.py").read_text(encoding="utf-8") == (
        "print('kept')\n"
    )
    assert (result.path / "tests" / "verify-task-3-fix.js").exists()
    assert sorted(path.name for path in paths.tests.iterdir()) == ["reusable"]


def test_nothing_to_archive(tmp_path: Path) -> None:
    paths = WorkspacePaths.from_root(tmp_path)

    assert _manager(paths).archive(reset=True, now=NOW) is None
    assert not paths.archives.exists()


def test_list_archives_reads_summary(tmp_path: Path) -> None:
    paths = _workspace(tmp_path)
    manager = _manager(paths)
    manager.archive(now=NOW)

    archives = manager.list_archives()

    assert len(archives) == 1
    assert archives[0].name == "2026-01-24-18-09-auth-refactor"
    assert archives[0].cost == "0.0123"
    assert archives[0].progress == "1/2"


def test_reset_commits_archive_even_when_push_fails(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="oroboreo")
    _init_git_repo(tmp_path)
    paths = _workspace(tmp_path)

    result = _manager(paths, GitRepository(tmp_path, timeout_seconds=30)).archive(
        reset=True, now=NOW
    )

    assert result is not None
    log = subprocess.run(
        ["git", "log", "-1", "--format=%s"],
        cwd=tmp_path,
        check=True,
        text=True,
        capture_output=True,
    ).stdout.strip()
    assert log == "Archive Session: auth-refactor"
    assert "Push failed" in caplog.text


def test_pull_request_skipped_without_gh(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="oroboreo")
    monkeypatch.setattr("oroboreo.archive.shutil.which", lambda name: None)
    paths = _workspace(tmp_path)
    manager = ArchiveManager(paths, GitConfig(auto_create_pr=True), GitRepository(tmp_path))

    assert manager.create_pull_request("auth-refactor", paths.archives) is None
    assert "GitHub CLI (gh) not installed" in caplog.text
