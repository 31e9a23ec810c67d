"""Archive/Reset Manager.

Copies the session's working files into ``archives/YYYY/MM/<stamp>-<slug>``,
sorts generated test scripts into reusable vs. session-specific, writes a
``SUMMARY.md`` and, on reset, rewrites the live files from fresh templates.
Archives are write-once.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from oroboreo.config import GitConfig, WorkspacePaths
from oroboreo.costs import empty_ledger
from oroboreo.logs import log_success, utc_timestamp
from oroboreo.state.git import GitCommandError, GitRepository
from oroboreo.state.session import session_slug
from oroboreo.tasks import count_task_lines, parse_session_metadata, read_session_metadata

logger = logging.getLogger(__name__)

DEFAULT_ARCHIVE_SLUG = "session"
SUMMARY_FILENAME = "SUMMARY.md"
TEST_SCRIPT_SUFFIXES = (".js", ".py", ".sh", ".ts")

SESSION_SPECIFIC_NAME_PATTERNS = (
    re.compile(r"task-?\d+", re.IGNORECASE),
    re.compile(r"\d{4}-\d{2}-\d{2}"),
    re.compile(r"session|fix-|bug-", re.IGNORECASE),
)
_EXT = r"\.(?:js|py|sh|ts)$"
GENERIC_NAME_PATTERNS = (
    re.compile(rf"^verify-[a-z-]+{_EXT}", re.IGNORECASE),
    re.compile(rf"^check-[a-z-]+{_EXT}", re.IGNORECASE),
    re.compile(rf"^validate-[a-z-]+{_EXT}", re.IGNORECASE),
    re.compile(rf"^test-[a-z-]+-flow{_EXT}", re.IGNORECASE),
)
CONTENT_RED_FLAGS = (
    re.compile(r"userId\s*=\s*\d+"),
    re.compile(r"(?:const|let|var)?\s*\w+Id\s*=\s*\d+"),
    re.compile(r"task\s*\d+", re.IGNORECASE),
    re.compile(r"\b(?:session|temporary|temp)\b", re.IGNORECASE),
)
SUMMARY_COST_PATTERN = re.compile(r"\*\*Total Cost:\*\* \$([0-9.]+)")
SUMMARY_TASKS_PATTERN = re.compile(r"\*\*Tasks Completed:\*\* (\d+/\d+)")

FEEDBACK_TEMPLATE = """# Human UI Verification Feedback

## Observations
[Describe what you saw during testing]

## Console Logs
[Paste any relevant error logs]

## Regressions
[List things that used to work but are now broken]

## Specific Requests
[Any additional details for the next planning pass]
"""

RULES_TEMPLATE = """# Creme Filling - System Rules

These rules are prepended to every task prompt.

- Keep changes focused on the current task.
- Mark the task `[x]` in oroboreo/cookie-crumbs.md only after its verification passes.
- Append what you learned to oroboreo/progress.txt.
"""

PR_BODY_TEMPLATE = """## Session Summary
{summary}

## Tasks Completed
{completed}/{total}

## Archive
See `oroboreo/archives/{archive_name}` for full session logs.
"""


def task_store_template(today: str) -> str:
    return f"""# Cookie Crumbs - Task List

<!--
Tasks run top to bottom. The agent marks a task [x] when it is done.

TASK FORMAT:
  - [ ] **Task 1: Title** [SIMPLE|COMPLEX|CRITICAL]
    - **Objective:** What needs to be accomplished
    - **Files:** Which files to modify
    - **Verification:** How to verify (must be scriptable)

COMPLEXITY TAGS:
  [SIMPLE]   -> cheap tier
  [COMPLEX]  -> standard tier
  [CRITICAL] -> standard tier
-->

**Session**: <!-- Session name here -->
**Created**: {today}
**Status**: Ready for tasks

---

## Tasks

<!-- Add tasks here using the format above -->

---

## Human UI Verification

After all tasks complete, verify:
- [ ] Feature works as expected
- [ ] No regressions introduced
"""


def progress_template(
    started_at: str,
    *,
    archive_ref: str | None = None,
    previous_summary: str | None = None,
) -> str:
    lines = ["# Oroboreo Progress Log", "", f"Session initialized: {started_at}"]
    if archive_ref:
        lines.append(f"Previous session archived: {archive_ref}")
    lines.extend(["", "---", ""])
    if previous_summary:
        lines.extend(["## Previous Session Summary", previous_summary, "", "---", ""])
    lines.extend(["## Current Session Progress", "<!-- Agents will append here -->", "", ""])
    return "\n".join(lines)


def is_test_reusable(filename: str, content: str | None = None) -> bool:
    """Classify a generated test script; anything not clearly generic stays with the session."""
    if any(pattern.search(filename) for pattern in SESSION_SPECIFIC_NAME_PATTERNS):
        return False
    if not any(pattern.search(filename) for pattern in GENERIC_NAME_PATTERNS):
        return False
    if content and any(pattern.search(content) for pattern in CONTENT_RED_FLAGS):
        return False
    return True


@dataclass(slots=True)
class ArchiveResult:
    path: Path
    session_name: str
    archived_files: list[str] = field(default_factory=list)
    reusable_tests: list[str] = field(default_factory=list)
    archived_tests: list[str] = field(default_factory=list)
    reset: bool = False
    pr_url: str | None = None


@dataclass(slots=True)
class ArchiveInfo:
    name: str
    path: Path
    modified: datetime
    cost: str | None = None
    progress: str | None = None


class ArchiveManager:
    def __init__(
        self,
        paths: WorkspacePaths,
        git_config: GitConfig | None = None,
        repo: GitRepository | None = None,
        gh_executable: str = "gh",
    ) -> None:
        self.paths = paths
        self.git_config = git_config or GitConfig()
        self.repo = repo
        self.gh_executable = gh_executable

    @property
    def working_files(self) -> list[Path]:
        return [
            self.paths.tasks,
            self.paths.progress,
            self.paths.costs,
            self.paths.log,
            self.paths.feedback,
        ]

    def session_name(self) -> str:
        return session_slug(read_session_metadata(self.paths.tasks).name, DEFAULT_ARCHIVE_SLUG)

    def session_created(self, now: datetime | None = None) -> datetime:
        created = read_session_metadata(self.paths.tasks).created
        if created is not None:
            return created
        return (now or datetime.now(UTC)).astimezone()

    def allocate_path(self, now: datetime | None = None) -> Path:
        created = self.session_created(now)
        folder = f"{created:%Y-%m-%d-%H-%M}-{self.session_name()}"
        base = self.paths.archives / f"{created:%Y}" / f"{created:%m}" / folder
        candidate = base
        counter = 1
        while candidate.exists():
            candidate = base.with_name(f"{folder}_{counter}")
            counter += 1
        candidate.mkdir(parents=True)
        return candidate

    def archive(self, *, reset: bool = False, now: datetime | None = None) -> ArchiveResult | None:
        present = [path for path in self.working_files if path.exists()]
        if not present:
            logger.warning("No files to archive!")
            return None

        session_name = self.session_name()
        archive_dir = self.allocate_path(now)
        result = ArchiveResult(path=archive_dir, session_name=session_name)
        for source in present:
            shutil.copy2(source, archive_dir / source.name)
            result.archived_files.append(source.name)
            logger.info("Archived: %s", source.name)
        for missing in self.working_files:
            if missing not in present:
                logger.info("Skipped: %s (not found)", missing.name)

        result.reusable_tests, result.archived_tests = self.archive_tests(archive_dir)
        created = self.session_created(now)
        (archive_dir / SUMMARY_FILENAME).write_text(
            self.render_summary(archive_dir, f"{created:%Y-%m-%d}"), encoding="utf-8"
        )
        log_success(
            logger,
            "Archived %d file(s) to %s",
            len(result.archived_files),
            self._display_path(archive_dir),
        )

        if reset:
            self.reset(archive_dir, now=now)
            result.reset = True
            self.commit_archive(session_name)
            result.pr_url = self.create_pull_request(session_name, archive_dir)
        return result

    def archive_tests(self, archive_dir: Path) -> tuple[list[str], list[str]]:
        tests_dir = self.paths.tests
        if not tests_dir.is_dir():
            logger.info("No tests/ directory found")
            return [], []
        scripts = sorted(
            path
            for path in tests_dir.iterdir()
            if path.is_file() and path.suffix in TEST_SCRIPT_SUFFIXES
        )
        if not scripts:
            logger.info("No test files to archive")
            return [], []

        reusable_dir = self.paths.reusable_tests
        reusable_dir.mkdir(parents=True, exist_ok=True)
        session_tests_dir = archive_dir / "tests"
        session_tests_dir.mkdir(parents=True, exist_ok=True)

        reusable: list[str] = []
        archived: list[str] = []
        for script in scripts:
            content = script.read_text(encoding="utf-8", errors="replace")
            if is_test_reusable(script.name, content):
                target = reusable_dir / script.name
                if target.exists():
                    logger.info("Already reusable: %s", script.name)
                else:
                    shutil.copy2(script, target)
                    logger.info("Reusable: %s -> tests/reusable/", script.name)
                    reusable.append(script.name)
            else:
                shutil.copy2(script, session_tests_dir / script.name)
                logger.info("Archived test: %s", script.name)
                archived.append(script.name)
            script.unlink()
        return reusable, archived

    def render_summary(self, archive_dir: Path, archived_on: str) -> str:
        lines = ["# Oroboreo Session Archive", "", f"**Archived:** {archived_on}", "", "---", ""]

        tasks_copy = archive_dir / self.paths.tasks.name
        if tasks_copy.exists():
            content = tasks_copy.read_text(encoding="utf-8")
            completed, total = count_task_lines(content)
            session = parse_session_metadata(content).name or "Unknown"
            lines.extend(
                [f"## Session: {session}", "", f"**Tasks Completed:** {completed}/{total}", ""]
            )

        costs_copy = archive_dir / self.paths.costs.name
        if costs_copy.exists():
            lines.extend(["## Costs", ""])
            try:
                costs = json.loads(costs_copy.read_text(encoding="utf-8"))
                entries = costs.get("tasks") or []
                total_cost = float((costs.get("session") or {}).get("totalCost") or 0)
            except (json.JSONDecodeError, AttributeError, TypeError, ValueError):
                logger.warning("Error reading cost data for summary")
                lines.extend(["*Error reading cost data*", ""])
            else:
                lines.append(f"**Total Cost:** ${total_cost:.4f}")
                lines.append(f"**Tasks:** {len(entries)}")
                if entries:
                    lines.append(f"**Average Cost per Task:** ${total_cost / len(entries):.4f}")
                lines.append("")
                usage: dict[str, int] = {}
                for entry in entries:
                    model = entry.get("model") or "Unknown"
                    usage[model] = usage.get(model, 0) + 1
                if usage:
                    lines.extend(["### Model Usage", ""])
                    lines.extend(f"- {model}: {count} tasks" for model, count in usage.items())
                    lines.append("")

        lines.extend(["---", "", "*Archived by Oroboreo - The Golden Loop*", ""])
        return "\n".join(lines)

    def archive_ref(self, archive_dir: Path) -> str:
        try:
            relative = archive_dir.relative_to(self.paths.archives)
        except ValueError:
            return str(archive_dir)
        return f"archives/{relative.as_posix()}"

    def carry_over_summary(self, archive_dir: Path) -> str:
        tasks_copy = archive_dir / self.paths.tasks.name
        if not tasks_copy.exists():
            return "No previous session data."
        content = tasks_copy.read_text(encoding="utf-8")
        session = parse_session_metadata(content).name or "Unknown"
        completed, total = count_task_lines(content)
        return (
            f'Session "{session}" completed {completed}/{total} tasks. '
            f"See {self.archive_ref(archive_dir)} for details."
        )

    def reset(self, archive_dir: Path, now: datetime | None = None) -> None:
        moment = now or datetime.now(UTC)
        started_at = utc_timestamp(moment)
        workdir = self.paths.workdir
        workdir.mkdir(parents=True, exist_ok=True)

        self.paths.tasks.write_text(task_store_template(f"{moment:%Y-%m-%d}"), encoding="utf-8")
        logger.info("Reset: %s", self.paths.tasks.name)
        self.paths.feedback.write_text(FEEDBACK_TEMPLATE, encoding="utf-8")
        logger.info("Reset: %s", self.paths.feedback.name)
        self.paths.progress.write_text(
            progress_template(
                started_at,
                archive_ref=self.archive_ref(archive_dir),
                previous_summary=self.carry_over_summary(archive_dir),
            ),
            encoding="utf-8",
        )
        logger.info("Reset: %s", self.paths.progress.name)
        self.paths.costs.write_text(
            json.dumps(empty_ledger(moment), indent=2), encoding="utf-8"
        )
        logger.info("Reset: %s", self.paths.costs.name)
        self.paths.log.write_text("", encoding="utf-8")
        logger.info("Cleared: %s", self.paths.log.name)
        for temp_file in self.paths.temp_prompt_files:
            if temp_file.exists():
                temp_file.unlink()
                logger.info("Deleted: %s", temp_file.name)
        log_success(logger, "Session files reset for next run")

    def commit_archive(self, session_name: str) -> bool:
        if self.repo is None or not self.repo.is_repo():
            logger.warning("Not a git repository, skipping backup")
            return False
        try:
            self.repo.add([self._repo_relative(self.paths.archives)])
            for path in self.working_files:
                if not path.exists():
                    continue
                try:
                    self.repo.add([self._repo_relative(path)])
                except GitCommandError as exc:
                    logger.debug("Could not stage %s: %s", path.name, exc)
            if not self.repo.has_staged_changes():
                logger.info("No changes to commit")
                return False
            self.repo.commit(f"Archive Session: {session_name}")
        except GitCommandError as exc:
            logger.warning("Git backup failed: %s", exc)
            return False

        try:
            branch = self.repo.current_branch()
            logger.info("Pushing to %s...", branch)
            self.repo.push(branch)
        except GitCommandError as exc:
            logger.warning("Push failed (commit saved locally): %s", exc)
        else:
            log_success(logger, "Git backup complete")
        return True

    def create_pull_request(self, session_name: str, archive_dir: Path) -> str | None:
        if not self.git_config.auto_create_pr:
            return None
        gh = shutil.which(self.gh_executable)
        if gh is None:
            logger.warning("GitHub CLI (gh) not installed. Skipping PR creation.")
            return None
        if self.repo is None:
            return None
        try:
            auth = self._run_gh([gh, "auth", "status"])
            if auth.returncode != 0:
                logger.warning("GitHub CLI not authenticated. Run: gh auth login")
                return None
            branch = self.repo.current_branch()
            summary = self.carry_over_summary(archive_dir)
            completed, total = self._summary_counts(summary)
            title = self.git_config.pr_title_format.format(session_name=session_name)
            body = PR_BODY_TEMPLATE.format(
                summary=summary,
                completed=completed,
                total=total,
                archive_name=archive_dir.name,
            )
            logger.info("Creating PR: %s -> %s", branch, self.git_config.base_branch)
            created = self._run_gh(
                [
                    gh,
                    "pr",
                    "create",
                    "--base",
                    self.git_config.base_branch,
                    "--head",
                    branch,
                    "--title",
                    title,
                    "--body",
                    body,
                ]
            )
        except (OSError, subprocess.TimeoutExpired, GitCommandError) as exc:
            logger.warning("PR creation failed: %s", exc)
            return None
        if created.returncode != 0:
            detail = created.stderr.strip() or created.stdout.strip()
            logger.warning("PR creation failed: %s", detail)
            return None
        url = created.stdout.strip()
        log_success(logger, "Pull Request created: %s", url)
        return url

    def list_archives(self) -> list[ArchiveInfo]:
        root = self.paths.archives
        if not root.is_dir():
            return []
        infos: list[ArchiveInfo] = []
        for path in root.glob("*/*/*"):
            if not path.is_dir():
                continue
            info = ArchiveInfo(
                name=path.name,
                path=path,
                modified=datetime.fromtimestamp(path.stat().st_mtime, tz=UTC),
            )
            summary = path / SUMMARY_FILENAME
            if summary.exists():
                text = summary.read_text(encoding="utf-8")
                cost = SUMMARY_COST_PATTERN.search(text)
                progress = SUMMARY_TASKS_PATTERN.search(text)
                info.cost = cost.group(1) if cost else None
                info.progress = progress.group(1) if progress else None
            infos.append(info)
        infos.sort(key=lambda item: (item.modified, item.name), reverse=True)
        return infos

    def _run_gh(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        timeout = self.repo.timeout_seconds if self.repo is not None else 60.0
        return subprocess.run(
            args,
            cwd=self.paths.project_root,
            text=True,
            capture_output=True,
            stdin=subprocess.DEVNULL,
            timeout=timeout,
        )

    @staticmethod
    def _summary_counts(summary: str) -> tuple[str, str]:
        match = re.search(r"(\d+)/(\d+) tasks", summary)
        if not match:
            return "?", "?"
        return match.group(1), match.group(2)

    def _repo_relative(self, path: Path) -> Path:
        try:
            return path.relative_to(self.paths.project_root)
        except ValueError:
            return path

    def _display_path(self, path: Path) -> str:
        try:
            return path.relative_to(self.paths.project_root).as_posix()
        except ValueError:
            return str(path)
