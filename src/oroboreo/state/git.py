from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)


class GitCommandError(RuntimeError):
    def __init__(self, args: list[str], message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.git_args = list(args)
        self.returncode = returncode


class GitTimeoutError(GitCommandError):
    """A single git call exceeded the configured per-command timeout."""


class GitRepository:
    """Thin wrapper over the git CLI; every call is bounded by ``timeout_seconds``."""

    def __init__(self, repo_root: Path, timeout_seconds: float = 60.0) -> None:
        self.repo_root = repo_root.resolve()
        self.timeout_seconds = timeout_seconds

    def run(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
                stdin=subprocess.DEVNULL,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            logger.error("Git operation timeout after %ss", f"{self.timeout_seconds:g}")
            raise GitTimeoutError(
                args, f"git {' '.join(args)} timed out after {self.timeout_seconds:g}s"
            ) from exc
        except OSError as exc:
            raise GitCommandError(args, f"Unable to run git: {exc}") from exc
        if check and proc.returncode != 0:
            message = proc.stderr.strip() or proc.stdout.strip() or f"git {args[0]} failed"
            raise GitCommandError(args, message, proc.returncode)
        return proc

    def is_repo(self) -> bool:
        try:
            proc = self.run(["rev-parse", "--is-inside-work-tree"], check=False)
        except GitCommandError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def current_branch(self) -> str:
        return self.run(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def status_porcelain(self) -> str:
        return self.run(["status", "--porcelain"]).stdout

    def is_dirty(self) -> bool:
        return bool(self.status_porcelain().strip())

    def checkout(self, branch: str) -> None:
        self.run(["checkout", branch])

    def create_branch(self, branch: str) -> None:
        self.run(["checkout", "-b", branch])

    def pull(self, remote: str, branch: str) -> None:
        self.run(["pull", remote, branch])

    def add_all(self) -> None:
        self.run(["add", "."])

    def add(self, paths: list[Path | str]) -> None:
        if paths:
            self.run(["add", "--", *[str(path) for path in paths]])

    def has_staged_changes(self) -> bool:
        proc = self.run(["diff", "--cached", "--quiet"], check=False)
        return proc.returncode == 1

    def commit(self, message: str) -> None:
        self.run(["commit", "-m", message])

    def commits_ahead(self, branch: str, base: str) -> int:
        raw = self.run(["rev-list", "--count", branch, "--not", base]).stdout.strip()
        try:
            return int(raw)
        except ValueError as exc:
            raise GitCommandError(["rev-list"], f"Unexpected rev-list output: {raw!r}") from exc

    def push(self, branch: str, remote: str = "origin") -> None:
        self.run(["push", "--set-upstream", remote, branch])
