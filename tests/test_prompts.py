from pathlib import Path

from oroboreo.config import LoopConfig
from oroboreo.prompts import (
    EXECUTION_RULES,
    MISSING_RULES,
    build_task_prompt,
    load_task_prompt,
    truncate_memory,
)
from oroboreo.tasks import Task

TASK = Task(
    id=2,
    title="Wire the login form [COMPLEX]",
    completed=False,
    details="  - **Objective:** submit credentials",
)


def test_truncate_memory_keeps_head_and_tail() -> None:
    text = "H" * 10 + "M" * 100 + "T" * 20

    truncated = truncate_memory(text, head_chars=10, tail_chars=20)

    assert truncated.startswith("H" * 10 + "\n")
    assert "[Truncated]" in truncated
    assert truncated.endswith("T" * 20)
    assert "M" not in truncated


def test_short_memory_is_untouched() -> None:
    assert truncate_memory("short", head_chars=10, tail_chars=20) == "short"


def test_prompt_sections_in_order() -> None:
    prompt = build_task_prompt(
        TASK, rules="# Rules\nBe tidy.", memory="learned things", loop_config=LoopConfig()
    )

    rules_at = prompt.index("Be tidy.")
    history_at = prompt.index("PROGRESS HISTORY")
    mission_at = prompt.index("CURRENT MISSION: Task 2")
    execution_at = prompt.index("EXECUTION RULES")
    assert rules_at < history_at < mission_at < execution_at
    assert "**Wire the login form [COMPLEX]**" in prompt
    assert "submit credentials" in prompt
    assert "learned things" in prompt
    assert prompt.rstrip().endswith(EXECUTION_RULES.splitlines()[-1])


def test_long_memory_is_truncated_in_prompt() -> None:
    config = LoopConfig(memory_head_chars=5, memory_tail_chars=5)
    memory = "abcde" + "x" * 50 + "vwxyz"

    prompt = build_task_prompt(TASK, rules="r", memory=memory, loop_config=config)

    assert "abcde" in prompt
    assert "[Truncated]" in prompt
    assert "x" * 50 not in prompt


def test_missing_rules_file_uses_placeholder(tmp_path: Path) -> None:
    prompt = load_task_prompt(
        TASK,
        rules_path=tmp_path / "creme-filling.md",
        memory_path=tmp_path / "progress.txt",
        loop_config=LoopConfig(),
    )

    assert prompt.startswith(MISSING_RULES)
    assert "CURRENT MISSION: Task 2" in prompt
