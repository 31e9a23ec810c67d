from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

TASK_LINE_PATTERN = re.compile(
    r"^-\s*\[([ xX])\]\s*\*\*Task\s+(\d+):\s*(.+?)\*\*(?:\s*(\[.+?\]))?"
)
SESSION_PATTERN = re.compile(r"\*\*Session\*\*:\s*(.+)", re.IGNORECASE)
CREATED_PATTERN = re.compile(r"\*\*Created\*\*:\s*(.+)", re.IGNORECASE)
REAL_TASK_PATTERN = re.compile(r"\*\*Task \d+:")
COMPLETED_TASK_PATTERN = re.compile(r"- \[x\] \*\*Task \d+:", re.IGNORECASE)
ANY_TASK_PATTERN = re.compile(r"- \[[ x]\] \*\*Task \d+:", re.IGNORECASE)
HTML_COMMENT_PATTERN = re.compile(r"<!--.*?-->", re.DOTALL)

PLACEHOLDER_TITLES = {"title", "task title", "<title>"}
PLACEHOLDER_TAG = "[SIMPLE|COMPLEX|CRITICAL]"


@dataclass(frozen=True, slots=True)
class Task:
    id: int
    title: str
    completed: bool
    details: str = ""

    @property
    def text(self) -> str:
        return f"{self.title} {self.details}"


@dataclass(frozen=True, slots=True)
class SessionMetadata:
    name: str | None
    created: datetime | None
    created_raw: str | None


class TaskStoreParser(Protocol):
    def parse(self, content: str) -> list[Task]: ...


class MarkdownTaskParser:
    """Checklist parser for the ``- [ ] **Task N: Title** [TAG]`` format.

    Document order is execution order. Indented lines directly below a task
    line are kept verbatim as its detail block.
    """

    def parse(self, content: str) -> list[Task]:
        tasks: list[Task] = []
        lines = content.splitlines()
        index = 0
        while index < len(lines):
            match = TASK_LINE_PATTERN.match(lines[index])
            index += 1
            if not match:
                continue
            checkmark, raw_id, raw_title, tag = match.groups()
            details: list[str] = []
            while index < len(lines) and _is_detail_line(lines[index]):
                details.append(lines[index].rstrip())
                index += 1
            title = raw_title.strip()
            if tag:
                title = f"{title} {tag}"
            tasks.append(
                Task(
                    id=int(raw_id),
                    title=title,
                    completed=checkmark.lower() == "x",
                    details="\n".join(details),
                )
            )
        return tasks


def _is_detail_line(line: str) -> bool:
    return bool(line.strip()) and line[:1] in {" ", "\t"}


def read_tasks(path: Path, parser: TaskStoreParser | None = None) -> list[Task]:
    if not path.exists():
        return []
    active_parser = parser or MarkdownTaskParser()
    return active_parser.parse(path.read_text(encoding="utf-8"))


def next_incomplete(tasks: list[Task]) -> Task | None:
    for task in tasks:
        if not task.completed:
            return task
    return None


def find_task(tasks: list[Task], task_id: int) -> Task | None:
    for task in tasks:
        if task.id == task_id:
            return task
    return None


def is_template_task(task: Task) -> bool:
    """Heuristic for placeholder tasks left over from the task-store template."""
    if PLACEHOLDER_TAG in task.title:
        return True
    return task.title.strip().lower() in PLACEHOLDER_TITLES


def real_tasks(tasks: list[Task]) -> list[Task]:
    return [task for task in tasks if not is_template_task(task)]


def count_task_lines(content: str) -> tuple[int, int]:
    """Return (completed, total) counting only ``**Task N:`` checkbox lines."""
    visible = HTML_COMMENT_PATTERN.sub("", content)
    completed = len(COMPLETED_TASK_PATTERN.findall(visible))
    total = len(ANY_TASK_PATTERN.findall(visible))
    return completed, total


def _metadata_value(pattern: re.Pattern[str], content: str) -> str | None:
    match = pattern.search(content)
    if not match:
        return None
    value = HTML_COMMENT_PATTERN.sub("", match.group(1)).strip()
    return value or None


def parse_created(raw: str) -> datetime | None:
    candidate = raw.strip()
    if not candidate:
        return None
    if len(candidate) > 10 and candidate[10] == " ":
        candidate = f"{candidate[:10]}T{candidate[11:]}"
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        return None


def parse_session_metadata(content: str) -> SessionMetadata:
    created_raw = _metadata_value(CREATED_PATTERN, content)
    return SessionMetadata(
        name=_metadata_value(SESSION_PATTERN, content),
        created=parse_created(created_raw) if created_raw else None,
        created_raw=created_raw,
    )


def read_session_metadata(path: Path) -> SessionMetadata:
    if not path.exists():
        return SessionMetadata(name=None, created=None, created_raw=None)
    return parse_session_metadata(path.read_text(encoding="utf-8"))


def slugify(value: str, *, max_length: int = 50) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.strip().lower()).strip("-")
    return slug[:max_length].rstrip("-")
