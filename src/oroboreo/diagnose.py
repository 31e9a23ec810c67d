"""Post-mortem analysis of an execution log.

Read-only: rebuilds per-task timelines from the structured log lines and
classifies every task as completed, hung, or never started. Raw agent output
interleaved in the log is ignored because only ``[<ts>] [<LEVEL>]`` records
count as markers, even when a record lands after an unterminated line of
agent output.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path

LOG_LINE_PATTERN = re.compile(
    r"\[(?P<ts>\d{4}-\d{2}-\d{2}T[^\]]+)\] \[(?P<level>[A-Z]+)\] (?P<message>.*)$"
)
TASK_START_PATTERN = re.compile(r"^Task (?P<id>\d+): (?P<title>.+)$")
TASK_COMPLETED_PATTERN = re.compile(r"Task (?P<id>\d+) COMPLETED!")
PID_PATTERN = re.compile(r"Agent spawned \(PID: (?P<pid>\d+)\)")
SPAWN_MARKER = "Spawning Claude Code agent"
HARD_TIMEOUT_MARKER = "Task execution timeout"
GIT_TIMEOUT_MARKERS = ("Git operation timeout", "Git branch setup timeout")
LAST_LINE_PREVIEW = 100


class DiagnoseError(RuntimeError):
    """Raised when the execution log cannot be read."""


class TaskStatus(StrEnum):
    COMPLETED = "completed"
    HUNG = "hung"
    NEVER_STARTED = "never_started"


class HangCause(StrEnum):
    TASK_TIMEOUT = "task_timeout"
    GIT_TIMEOUT = "git_timeout"
    UNKNOWN = "unknown"


_CAUSE_TEXT = {
    HangCause.TASK_TIMEOUT: "Task execution timeout",
    HangCause.GIT_TIMEOUT: "Git operation timeout",
    HangCause.UNKNOWN: "Unknown - no timeout logged",
}


@dataclass(slots=True)
class _Attempt:
    task_id: int
    title: str
    started_raw: str
    started_at: datetime | None
    spawned: bool = False
    completed: bool = False
    pid: int | None = None
    timed_out: bool = False
    git_timeout: bool = False
    ended_raw: str | None = None
    ended_at: datetime | None = None
    last_raw: str | None = None
    last_at: datetime | None = None
    last_line: str = ""


@dataclass(slots=True)
class TaskTimeline:
    task_id: int
    title: str
    status: TaskStatus
    attempts: int
    started_at: str
    ended_at: str | None = None
    duration: str | None = None
    pid: int | None = None
    cause: HangCause | None = None
    last_line: str = ""


@dataclass(slots=True)
class DiagnoseReport:
    log_path: Path | None
    tasks: list[TaskTimeline] = field(default_factory=list)

    def by_status(self, status: TaskStatus) -> list[TaskTimeline]:
        return [task for task in self.tasks if task.status is status]

    @property
    def completed(self) -> list[TaskTimeline]:
        return self.by_status(TaskStatus.COMPLETED)

    @property
    def hung(self) -> list[TaskTimeline]:
        return self.by_status(TaskStatus.HUNG)

    @property
    def never_started(self) -> list[TaskTimeline]:
        return self.by_status(TaskStatus.NEVER_STARTED)


def _parse_timestamp(raw: str) -> datetime | None:
    try:
        return datetime.fromisoformat(raw.strip())
    except ValueError:
        return None


def format_duration(start: datetime | None, end: datetime | None) -> str:
    if start is None or end is None:
        return "unknown"
    try:
        total = int((end - start).total_seconds())
    except TypeError:
        return "unknown"
    total = max(total, 0)
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def _collect_attempts(content: str) -> list[_Attempt]:
    attempts: list[_Attempt] = []
    current: _Attempt | None = None
    for line in content.splitlines():
        structured = LOG_LINE_PATTERN.search(line)
        if structured is None:
            continue
        raw_ts = structured.group("ts")
        message = structured.group("message")
        start = TASK_START_PATTERN.match(message) if structured.group("level") == "INFO" else None
        if start is not None:
            current = _Attempt(
                task_id=int(start.group("id")),
                title=start.group("title").strip(),
                started_raw=raw_ts,
                started_at=_parse_timestamp(raw_ts),
            )
            attempts.append(current)
        if current is None:
            continue

        current.last_raw = raw_ts
        current.last_at = _parse_timestamp(raw_ts)
        current.last_line = structured.group(0)
        if SPAWN_MARKER in message:
            current.spawned = True
        pid = PID_PATTERN.search(message)
        if pid is not None:
            current.pid = int(pid.group("pid"))
        done = TASK_COMPLETED_PATTERN.search(message)
        if done is not None and int(done.group("id")) == current.task_id:
            current.completed = True
            current.ended_raw = raw_ts
            current.ended_at = _parse_timestamp(raw_ts)
        if HARD_TIMEOUT_MARKER in message:
            current.timed_out = True
        if any(marker in message for marker in GIT_TIMEOUT_MARKERS):
            current.git_timeout = True
    return attempts


def _timeline(attempt: _Attempt, count: int) -> TaskTimeline:
    if attempt.completed:
        return TaskTimeline(
            task_id=attempt.task_id,
            title=attempt.title,
            status=TaskStatus.COMPLETED,
            attempts=count,
            started_at=attempt.started_raw,
            ended_at=attempt.ended_raw,
            duration=format_duration(attempt.started_at, attempt.ended_at),
            pid=attempt.pid,
            last_line=attempt.last_line,
        )
    if attempt.spawned:
        if attempt.timed_out:
            cause = HangCause.TASK_TIMEOUT
        elif attempt.git_timeout:
            cause = HangCause.GIT_TIMEOUT
        else:
            cause = HangCause.UNKNOWN
        return TaskTimeline(
            task_id=attempt.task_id,
            title=attempt.title,
            status=TaskStatus.HUNG,
            attempts=count,
            started_at=attempt.started_raw,
            ended_at=attempt.last_raw,
            duration=format_duration(attempt.started_at, attempt.last_at),
            pid=attempt.pid,
            cause=cause,
            last_line=attempt.last_line,
        )
    return TaskTimeline(
        task_id=attempt.task_id,
        title=attempt.title,
        status=TaskStatus.NEVER_STARTED,
        attempts=count,
        started_at=attempt.started_raw,
        last_line=attempt.last_line,
    )


def analyze_log(content: str, log_path: Path | None = None) -> DiagnoseReport:
    """Classify each task by its most recent attempt, or by any attempt that completed."""
    grouped: dict[int, list[_Attempt]] = {}
    for attempt in _collect_attempts(content):
        grouped.setdefault(attempt.task_id, []).append(attempt)

    report = DiagnoseReport(log_path=log_path)
    for attempts in grouped.values():
        decisive = next((item for item in reversed(attempts) if item.completed), attempts[-1])
        report.tasks.append(_timeline(decisive, len(attempts)))
    return report


def analyze_log_file(path: Path) -> DiagnoseReport:
    if not path.exists():
        raise DiagnoseError(f"Log file not found: {path}")
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise DiagnoseError(f"Unable to read log file {path}: {exc}") from exc
    return analyze_log(content, path)


def render_report(report: DiagnoseReport) -> str:
    rule = "=" * 80
    lines = [rule, "OROBOREO POST-MORTEM ANALYSIS", rule, ""]
    if report.log_path is not None:
        lines.append(f"Log file: {report.log_path}")
    lines.extend([f"Total tasks found: {len(report.tasks)}", ""])

    lines.extend(["=== HUNG TASKS (spawned but never completed) ===", ""])
    for task in report.hung:
        lines.append(f"Task {task.task_id}: {task.title}")
        lines.append(f"  Started:  {task.started_at}")
        if task.pid is not None:
            lines.append(f"  PID:      {task.pid}")
        lines.append("  Status:   HUNG (never completed)")
        lines.append(f"  Cause:    {_CAUSE_TEXT[task.cause or HangCause.UNKNOWN]}")
        lines.append(f"  Attempts: {task.attempts}")
        lines.append(f"  Duration: {task.duration}")
        lines.append(f"  Last log: {task.last_line[:LAST_LINE_PREVIEW]}")
        lines.append("")
    if not report.hung:
        lines.extend(["  No hung tasks found", ""])

    lines.extend(["=== COMPLETED TASKS ===", ""])
    for task in report.completed:
        lines.append(f"Task {task.task_id}: {task.duration} ({task.attempts} attempt(s))")
    if not report.completed:
        lines.append("  No completed tasks found")
    lines.append("")

    lines.extend(["=== FAILED/INCOMPLETE TASKS ===", ""])
    for task in report.never_started:
        lines.append(f"Task {task.task_id}: {task.title}")
        lines.append("  Status: Never started")
        lines.append("")
    if not report.never_started:
        lines.extend(["  No failed tasks found", ""])

    lines.extend([rule, "SUMMARY", rule, ""])
    lines.append(f"Total tasks:      {len(report.tasks)}")
    lines.append(f"Completed:        {len(report.completed)}")
    lines.append(f"Hung:             {len(report.hung)}")
    lines.append(f"Failed:           {len(report.never_started)}")
    lines.append("")
    if report.hung:
        lines.append("RECOMMENDATION: hung tasks detected; review the execution log around them.")
    elif report.tasks and len(report.completed) == len(report.tasks):
        lines.append("All tasks completed successfully!")
    return "\n".join(lines) + "\n"
