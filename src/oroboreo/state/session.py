"""Session/Branch Manager.

Binds one loop execution to one git branch. Branch setup runs once at loop
start and its failures are fatal; per-task commits run after every observed
completion and their failures only warn.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

from oroboreo.config import GitConfig
from oroboreo.logs import log_success
from oroboreo.state.git import GitCommandError, GitRepository, GitTimeoutError
from oroboreo.tasks import (
    Task,
    TaskStoreParser,
    read_session_metadata,
    read_tasks,
    real_tasks,
    slugify,
)

logger = logging.getLogger(__name__)

BACKUP_COMMIT_MESSAGE = "pre-oreo session backup"
DEFAULT_SESSION_SLUG = "oreo-session"


@dataclass(slots=True)
class SessionSetup:
    ok: bool
    branch: str | None = None
    resumed: bool = False
    reason: str = ""


class CommitStatus(StrEnum):
    COMMITTED = "committed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(slots=True)
class CommitResult:
    status: CommitStatus
    message: str = ""
    reason: str = ""


def session_slug(name: str | None, fallback: str = DEFAULT_SESSION_SLUG) -> str:
    slug = slugify(name or "")
    return slug or fallback


def branch_timestamp(moment: datetime) -> str:
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H-%M-%S")


def task_commit_message(task: Task) -> str:
    return f"Oreo: Completed Task {task.id} ({task.title})"


class SessionBranchManager:
    def __init__(
        self,
        repo: GitRepository,
        tasks_path: Path,
        git_config: GitConfig | None = None,
        parser: TaskStoreParser | None = None,
    ) -> None:
        self.repo = repo
        self.tasks_path = tasks_path
        self.git_config = git_config or GitConfig()
        self.parser = parser

    def is_session_branch(self, branch: str) -> bool:
        return branch.startswith(self.git_config.branch_prefix)

    def branch_name(self, now: datetime | None = None) -> str:
        metadata = read_session_metadata(self.tasks_path)
        slug = session_slug(metadata.name)
        return f"{self.git_config.branch_prefix}{slug}-{branch_timestamp(now or datetime.now(UTC))}"

    def should_resume(self, branch: str) -> bool:
        """Decide whether an existing session branch still has work left.

        The commits-ahead check is an approximation: a finished-but-unarchived
        session and an unrelated branch that is ahead of the trunk look alike.
        """
        try:
            if not self.tasks_path.exists():
                logger.warning("%s not found - assuming new session", self.tasks_path.name)
                return False
            candidates = real_tasks(read_tasks(self.tasks_path, self.parser))
            if not candidates:
                logger.info("No numbered tasks found - appears to be template")
                return False
            incomplete = [task for task in candidates if not task.completed]
            if incomplete:
                logger.info(
                    "Found %d incomplete task(s) in %s", len(incomplete), self.tasks_path.name
                )
                return True
            try:
                ahead = self.repo.commits_ahead(branch, self.git_config.base_branch)
            except GitCommandError as exc:
                logger.warning("Could not check git commits: %s", exc)
            else:
                if ahead > 0:
                    logger.info(
                        "Branch has %d commits beyond %s - "
                        "session appears complete but not archived",
                        ahead,
                        self.git_config.base_branch,
                    )
                    return False
            logger.info("All tasks in %s appear complete", self.tasks_path.name)
            return False
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Error checking session status: %s", exc)
            return True

    def setup(self, now: datetime | None = None) -> SessionSetup:
        logger.info("Setting up Git environment...")
        base = self.git_config.base_branch
        try:
            if not self.repo.is_repo():
                raise GitCommandError([], f"Not a git repository: {self.repo.repo_root}")
            current = self.repo.current_branch()
            logger.info("Currently on branch: %s", current)

            if self.is_session_branch(current):
                logger.info("Detected existing Oreo session branch")
                if self.should_resume(current):
                    log_success(logger, "Resuming existing session on branch: %s", current)
                    logger.info("Skipping branch creation - continuing from where you left off")
                    return SessionSetup(ok=True, branch=current, resumed=True)
                logger.info("Previous session appears complete, starting new session")

            if current != base:
                logger.warning("Not on %s branch. Switching to %s for session start...", base, base)
                if self.repo.is_dirty():
                    logger.info("Committing changes on current branch before switching...")
                    self.repo.add_all()
                    self.repo.commit(BACKUP_COMMIT_MESSAGE)
                self.repo.checkout(base)

            logger.info("Git: Pulling latest changes from origin/%s...", base)
            try:
                self.repo.pull("origin", base)
            except GitCommandError:
                logger.warning(
                    "Could not pull from origin/%s. Continuing with local %s.", base, base
                )

            self.repo.add_all()
            if self.repo.is_dirty():
                logger.info("Committing pre-existing changes...")
                self.repo.commit(BACKUP_COMMIT_MESSAGE)

            verified = self.repo.current_branch()
            if verified != base:
                raise GitCommandError(
                    [], f"Expected to be on {base} branch, but on {verified}"
                )

            branch = self.branch_name(now)
            logger.info("Creating new branch from %s: %s", base, branch)
            self.repo.create_branch(branch)
        except GitTimeoutError as exc:
            logger.error("Git branch setup timeout: %s", exc)
            return SessionSetup(ok=False, reason=str(exc))
        except GitCommandError as exc:
            logger.error("Git branch setup failed: %s", exc)
            logger.error("Please resolve git issues and try again")
            return SessionSetup(ok=False, reason=str(exc))

        log_success(logger, "Successfully created session branch: %s", branch)
        return SessionSetup(ok=True, branch=branch, resumed=False)

    def commit_task(self, task: Task) -> CommitResult:
        message = task_commit_message(task)
        try:
            self.repo.add_all()
            if not self.repo.is_dirty():
                logger.info("No changes to commit")
                return CommitResult(status=CommitStatus.SKIPPED)
            logger.info('Git: Committing with message: "%s"', message)
            self.repo.commit(message)
        except GitTimeoutError as exc:
            return CommitResult(status=CommitStatus.FAILED, message=message, reason=str(exc))
        except GitCommandError as exc:
            logger.warning("Git commit failed: %s", exc)
            return CommitResult(status=CommitStatus.FAILED, message=message, reason=str(exc))
        logger.info("Committed changes for Task %d", task.id)
        return CommitResult(status=CommitStatus.COMMITTED, message=message)
