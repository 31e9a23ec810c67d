"""The Golden Loop.

One task at a time: re-parse the task store, pick the first incomplete task,
run the agent on it, then re-parse to see whether the agent ticked the
checkbox. The checkbox is the only completion signal; the agent's exit code
is logged but never decides success.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from oroboreo.archive import ArchiveManager
from oroboreo.backends.base import AgentBackend, AgentOutcome, AgentResult
from oroboreo.config import OroboreoConfig, WorkspacePaths
from oroboreo.costs import CostLedger
from oroboreo.logs import log_success, utc_timestamp
from oroboreo.models import ModelSpec
from oroboreo.prompts import load_task_prompt
from oroboreo.providers import ProviderConfig, model_for
from oroboreo.routing import select_tier
from oroboreo.state.session import SessionBranchManager
from oroboreo.tasks import (
    MarkdownTaskParser,
    Task,
    TaskStoreParser,
    find_task,
    next_incomplete,
    read_tasks,
)

logger = logging.getLogger(__name__)

SEPARATOR = "-" * 79


class LoopStatus(StrEnum):
    COMPLETE = "complete"
    ABORTED = "aborted"
    ITERATION_CAP = "iteration_cap"
    INTERRUPTED = "interrupted"
    SETUP_FAILED = "setup_failed"


@dataclass(slots=True)
class RunSummary:
    status: LoopStatus
    iterations: int = 0
    completed_task_ids: list[int] = field(default_factory=list)
    branch: str | None = None
    archive_path: Path | None = None
    reason: str = ""

    @property
    def exit_code(self) -> int:
        return 0 if self.status is LoopStatus.COMPLETE else 1


@dataclass(slots=True)
class SessionState:
    """Live view of the running loop, read by the status reporter."""

    running: bool = False
    current_task_id: int | None = None
    current_task_title: str | None = None
    attempt: int = 0
    max_attempts: int = 0
    task_started_at: datetime | None = None
    provider: str | None = None
    model: str | None = None
    session_cost: float = 0.0
    branch: str | None = None

    def snapshot_state(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "currentTask": (
                {
                    "id": self.current_task_id,
                    "title": self.current_task_title,
                    "attempt": self.attempt,
                    "maxAttempts": self.max_attempts,
                }
                if self.current_task_id is not None
                else None
            ),
            "taskStartedAt": (
                utc_timestamp(self.task_started_at) if self.task_started_at else None
            ),
            "provider": self.provider,
            "model": self.model,
            "sessionCost": self.session_cost,
            "branch": self.branch,
        }


class GoldenLoop:
    def __init__(
        self,
        paths: WorkspacePaths,
        config: OroboreoConfig,
        parser: TaskStoreParser | None,
        session: SessionBranchManager | None,
        backend: AgentBackend,
        ledger: CostLedger,
        provider: ProviderConfig,
        archiver: ArchiveManager | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.paths = paths
        self.config = config
        self.parser = parser or MarkdownTaskParser()
        self.session = session
        self.backend = backend
        self.ledger = ledger
        self.provider = provider
        self.archiver = archiver
        self._sleep = sleep
        self.state = SessionState(
            provider=provider.name,
            max_attempts=config.loop.max_retries_per_task,
        )
        self._stop_event = asyncio.Event()
        self._terminate_task: asyncio.Future[None] | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self, reason: str = "interrupt") -> None:
        """Stop after the current step and kill the in-flight agent, if any."""
        if self._stop_event.is_set():
            return
        logger.warning("Received %s - attempting graceful shutdown", reason)
        self._stop_event.set()
        self._terminate_task = asyncio.ensure_future(self.backend.terminate())

    def _read_tasks(self) -> list[Task]:
        return read_tasks(self.paths.tasks, self.parser)

    async def run(self) -> RunSummary:
        self.state.running = True
        try:
            return await self._run()
        finally:
            self.state.running = False
            self.state.current_task_id = None
            self.state.current_task_title = None
            if self._terminate_task is not None:
                await asyncio.gather(self._terminate_task, return_exceptions=True)

    async def _run(self) -> RunSummary:
        branch: str | None = None
        if self.session is not None:
            setup = await asyncio.to_thread(self.session.setup)
            if not setup.ok:
                return RunSummary(status=LoopStatus.SETUP_FAILED, reason=setup.reason)
            branch = setup.branch
            self.state.branch = branch
            logger.info("Git branch: %s", branch)

        self.state.session_cost = self.ledger.total_cost()
        loop_config = self.config.loop
        attempts: dict[int, int] = {}
        completed: list[int] = []
        iterations = 0

        while True:
            if self.stop_requested:
                logger.info("Shutdown complete")
                return RunSummary(
                    status=LoopStatus.INTERRUPTED,
                    iterations=iterations,
                    completed_task_ids=completed,
                    branch=branch,
                    reason="Interrupted",
                )
            if iterations >= loop_config.max_global_loops:
                logger.warning("Max loops (%d) reached. Stopping.", loop_config.max_global_loops)
                return RunSummary(
                    status=LoopStatus.ITERATION_CAP,
                    iterations=iterations,
                    completed_task_ids=completed,
                    branch=branch,
                    reason=f"Max loops ({loop_config.max_global_loops}) reached",
                )

            task = next_incomplete(self._read_tasks())
            if task is None:
                log_success(logger, "All tasks complete!")
                logger.info("Total Cost: $%.2f", self.ledger.total_cost())
                return RunSummary(
                    status=LoopStatus.COMPLETE,
                    iterations=iterations,
                    completed_task_ids=completed,
                    branch=branch,
                    archive_path=await self._archive(),
                )

            previous_attempts = attempts.get(task.id, 0)
            if previous_attempts >= loop_config.max_retries_per_task:
                logger.error(
                    "Task %d failed %d times. Aborting.", task.id, loop_config.max_retries_per_task
                )
                return RunSummary(
                    status=LoopStatus.ABORTED,
                    iterations=iterations,
                    completed_task_ids=completed,
                    branch=branch,
                    reason=f"Task {task.id} failed {previous_attempts} times",
                )

            iterations += 1
            model = model_for(self.provider, select_tier(task))
            self._begin_task(task, model, previous_attempts + 1)
            logger.info("Task %d: %s", task.id, task.title)
            logger.info("Model: %s", model.name)
            logger.info("Attempt: %d/%d", previous_attempts + 1, loop_config.max_retries_per_task)

            prompt = load_task_prompt(
                task,
                rules_path=self.paths.rules,
                memory_path=self.paths.progress,
                loop_config=loop_config,
            )
            result = await self.backend.run(prompt, model, self.provider)
            self._record_cost(task, model, prompt, result)

            if self.stop_requested:
                continue

            logger.info("Post-execution: Checking task completion status...")
            refreshed = find_task(self._read_tasks(), task.id)
            is_complete = refreshed is not None and refreshed.completed
            logger.info(
                "Post-execution: Task %d completion status: %s",
                task.id,
                "COMPLETE" if is_complete else "INCOMPLETE",
            )
            if is_complete:
                log_success(logger, "Task %d COMPLETED!", task.id)
                attempts.pop(task.id, None)
                completed.append(task.id)
                if self.session is not None and self.config.git.commit_on_success:
                    logger.info("Post-execution: Committing changes to git...")
                    await asyncio.to_thread(self.session.commit_task, refreshed or task)
            else:
                if result.outcome is AgentOutcome.FATAL_FAILURE:
                    logger.error("Execution failed: %s", result.reason)
                    return RunSummary(
                        status=LoopStatus.ABORTED,
                        iterations=iterations,
                        completed_task_ids=completed,
                        branch=branch,
                        reason=result.reason,
                    )
                attempts[task.id] = previous_attempts + 1
                if not result.ok:
                    logger.error("Execution failed: %s", result.reason)
                logger.warning("Task %d not marked complete, retrying...", task.id)

            await self._cooldown()

    def _begin_task(self, task: Task, model: ModelSpec, attempt: int) -> None:
        logger.info(SEPARATOR)
        self.state.current_task_id = task.id
        self.state.current_task_title = task.title
        self.state.attempt = attempt
        self.state.task_started_at = datetime.now(UTC)
        self.state.model = model.name

    def _record_cost(
        self, task: Task, model: ModelSpec, prompt: str, result: AgentResult
    ) -> None:
        if not result.spawned:
            return
        try:
            self.ledger.record(
                task, model, provider=self.provider.name, prompt=prompt, output=result.output
            )
        except OSError as exc:
            logger.error("Failed to write cost ledger: %s", exc)
            return
        self.state.session_cost = self.ledger.total_cost()

    async def _cooldown(self) -> None:
        seconds = self.config.loop.cooldown_seconds
        if seconds <= 0 or self.stop_requested:
            return
        logger.info("Cooling down %ss...", f"{seconds:g}")
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        stopper = asyncio.ensure_future(self._stop_event.wait())
        _, pending = await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        for future in pending:
            future.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    async def _archive(self) -> Path | None:
        if self.archiver is None:
            return None
        logger.info("Auto-archiving session...")
        try:
            result = await asyncio.to_thread(self.archiver.archive, reset=True)
        except OSError as exc:
            logger.warning("Archive failed: %s", exc)
            return None
        return result.path if result is not None else None
