from __future__ import annotations

from pathlib import Path

from oroboreo.config import LoopConfig
from oroboreo.tasks import Task

SEPARATOR = "=" * 79
MISSING_RULES = "# No creme-filling.md found - please create system rules"

EXECUTION_RULES = """
1. Complete the task described above.
2. Follow all rules in creme-filling.md (the system rules above).
3. Update cookie-crumbs.md to mark task [x] when done.
4. Log important findings to progress.txt.
5. Do NOT create unnecessary files or over-engineer.
6. **Check oroboreo/tests/reusable/** for existing verification scripts before creating new ones.
7. **Create session-specific tests** in oroboreo/tests/ (will be archived after session).
8. **Create reusable tests** in oroboreo/tests/reusable/ for generic functionality (persists).
9. Tests MUST be executable scripts (Node.js, Python, bash, curl) - NOT manual browser checks.
""".strip()


def truncate_memory(text: str, *, head_chars: int, tail_chars: int) -> str:
    if len(text) <= head_chars + tail_chars:
        return text
    return f"{text[:head_chars]}\n\n... [Truncated] ...\n\n{text[-tail_chars:]}"


def _section(title: str) -> str:
    return f"{SEPARATOR}\n{title}\n{SEPARATOR}"


def build_task_prompt(
    task: Task,
    *,
    rules: str,
    memory: str,
    loop_config: LoopConfig,
) -> str:
    history = truncate_memory(
        memory,
        head_chars=loop_config.memory_head_chars,
        tail_chars=loop_config.memory_tail_chars,
    )
    parts = [
        rules.strip(),
        _section("PROGRESS HISTORY"),
        history.strip(),
        _section(f"CURRENT MISSION: Task {task.id}"),
        f"**{task.title}**",
        task.details,
        _section("EXECUTION RULES"),
        EXECUTION_RULES,
    ]
    return "\n\n".join(part for part in parts if part) + "\n"


def load_task_prompt(
    task: Task,
    *,
    rules_path: Path,
    memory_path: Path,
    loop_config: LoopConfig,
) -> str:
    rules = rules_path.read_text(encoding="utf-8") if rules_path.exists() else MISSING_RULES
    memory = memory_path.read_text(encoding="utf-8") if memory_path.exists() else ""
    return build_task_prompt(task, rules=rules, memory=memory, loop_config=loop_config)
