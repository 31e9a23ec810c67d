import asyncio
import logging
import re
import time
from collections.abc import Iterator
from pathlib import Path

import pytest

from oroboreo.backends import AgentOutcome, ClaudeCodeBackend
from oroboreo.config import AgentConfig, TimeoutsConfig
from oroboreo.diagnose import HangCause, TaskStatus, analyze_log_file
from oroboreo.logs import configure_logging
from oroboreo.models import ALIAS_MODELS, BEDROCK_MODELS, Tier
from oroboreo.providers import BedrockProvider, SubscriptionProvider

MODEL = ALIAS_MODELS[Tier.CHEAP]
RECORD_PATTERN = re.compile(r"^\[[^\]]+\] \[(?P<level>[A-Z]+)\] (?P<message>.*)$")


@pytest.fixture
def execution_log(tmp_path: Path) -> Iterator[Path]:
    log_path = tmp_path / "oroboreo" / "oreo-execution.log"
    configure_logging(log_path, console=False)
    yield log_path
    configure_logging(console=False)


def _backend(
    tmp_path: Path,
    script: str,
    *,
    timeouts: TimeoutsConfig | None = None,
    base_env: dict[str, str] | None = None,
) -> ClaudeCodeBackend:
    wrapper = tmp_path / "fake-wrapper.sh"
    wrapper.write_text(script, encoding="utf-8")
    return ClaudeCodeBackend(
        working_directory=tmp_path,
        prompt_path=tmp_path / "oroboreo" / ".oreo-prompt.txt",
        log_path=tmp_path / "oroboreo" / "oreo-execution.log",
        timeouts=timeouts,
        agent=AgentConfig(wrapper=str(wrapper)),
        base_env=base_env if base_env is not None else {"PATH": "/usr/bin:/bin"},
        echo=False,
    )


def test_successful_run_streams_output_to_log(tmp_path: Path) -> None:
    backend = _backend(
        tmp_path,
        'cat "$1"\necho "model=$OREO_AGENT_MODEL"\necho "warn line" >&2\n',
    )

    result = asyncio.run(backend.run("do the task", MODEL, SubscriptionProvider()))

    assert result.outcome is AgentOutcome.SUCCESS
    assert result.ok
    assert result.exit_code == 0
    assert result.pid is not None
    assert "do the task" in result.output
    assert "model=haiku-4-5" in result.output
    assert "warn line" in result.output
    log_text = (tmp_path / "oroboreo" / "oreo-execution.log").read_text(encoding="utf-8")
    assert "model=haiku-4-5" in log_text
    assert log_text.endswith("\n")
    assert (tmp_path / "oroboreo" / ".oreo-prompt.txt").read_text(encoding="utf-8") == "do the task"
    assert not backend.in_flight


def test_child_env_has_no_stale_credentials(tmp_path: Path) -> None:
    backend = _backend(
        tmp_path,
        'echo "key=${ANTHROPIC_API_KEY:-none} bedrock=${CLAUDE_CODE_USE_BEDROCK:-none}"\n',
        base_env={
            "PATH": "/usr/bin:/bin",
            "ANTHROPIC_API_KEY": "stale",
            "CLAUDE_CODE_USE_BEDROCK": "1",
        },
    )

    result = asyncio.run(backend.run("prompt", MODEL, SubscriptionProvider()))

    assert "key=none bedrock=none" in result.output


def test_nonzero_exit_is_retryable(tmp_path: Path) -> None:
    backend = _backend(tmp_path, "echo partial\nexit 3\n")

    result = asyncio.run(backend.run("prompt", MODEL, SubscriptionProvider()))

    assert result.outcome is AgentOutcome.RETRYABLE_FAILURE
    assert result.exit_code == 3
    assert result.reason == "Exit code 3"
    assert not result.timed_out


def test_hard_timeout_force_kills_process_group(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="oroboreo")
    backend = _backend(
        tmp_path,
        "trap '' TERM\necho started\nsleep 30\n",
        timeouts=TimeoutsConfig(task_timeout_ms=500, kill_grace_ms=200, heartbeat_ms=60_000),
    )

    started = time.monotonic()
    result = asyncio.run(backend.run("prompt", MODEL, SubscriptionProvider()))
    elapsed = time.monotonic() - started

    assert result.outcome is AgentOutcome.RETRYABLE_FAILURE
    assert result.timed_out
    assert "started" in result.output
    assert elapsed < 10
    assert result.reason == "Task execution timeout after 0.5s"
    assert "Task execution timeout after 0.5s" in caplog.text
    assert "Force killed hung process" in caplog.text


def test_heartbeat_warns_about_silence(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="oroboreo")
    backend = _backend(
        tmp_path,
        "sleep 0.5\n",
        timeouts=TimeoutsConfig(heartbeat_ms=100, silence_warning_ms=50),
    )

    result = asyncio.run(backend.run("prompt", MODEL, SubscriptionProvider()))

    assert result.ok
    assert "No output from agent" in caplog.text


def test_terminate_stops_in_flight_agent(tmp_path: Path) -> None:
    backend = _backend(tmp_path, "sleep 30\n")

    async def scenario():
        running = asyncio.create_task(backend.run("prompt", MODEL, SubscriptionProvider()))
        for _ in range(100):
            if backend.in_flight:
                break
            await asyncio.sleep(0.05)
        await backend.terminate()
        return await running

    started = time.monotonic()
    result = asyncio.run(scenario())

    assert time.monotonic() - started < 10
    assert result.outcome is AgentOutcome.RETRYABLE_FAILURE
    assert not result.timed_out
    assert result.exit_code != 0


def test_missing_wrapper_is_fatal(tmp_path: Path) -> None:
    backend = ClaudeCodeBackend(
        working_directory=tmp_path,
        prompt_path=tmp_path / ".oreo-prompt.txt",
        log_path=None,
        agent=AgentConfig(wrapper=str(tmp_path / "missing.sh")),
        echo=False,
    )

    result = asyncio.run(backend.run("prompt", MODEL, SubscriptionProvider()))

    assert result.outcome is AgentOutcome.FATAL_FAILURE
    assert not result.spawned


def test_build_env_for_bedrock_passes_model_and_command(tmp_path: Path) -> None:
    backend = ClaudeCodeBackend(
        working_directory=tmp_path,
        prompt_path=tmp_path / ".oreo-prompt.txt",
        log_path=None,
        agent=AgentConfig(command="claude"),
        base_env={"ANTHROPIC_API_KEY": "stale"},
        echo=False,
    )
    model = BEDROCK_MODELS[Tier.STANDARD]

    env = backend.build_env(BedrockProvider(access_key_id="AKIA", secret_access_key="s"), model)

    assert env["ANTHROPIC_MODEL"] == model.id
    assert env["OREO_AGENT_MODEL"] == model.id
    assert env["OREO_AGENT_COMMAND"] == "claude"
    assert "ANTHROPIC_API_KEY" not in env


def test_packaged_wrapper_pipes_prompt_to_agent_command(tmp_path: Path) -> None:
    agent = tmp_path / "fake-agent.sh"
    agent.write_text('echo "args: $*"\ncat\n', encoding="utf-8")
    backend = ClaudeCodeBackend(
        working_directory=tmp_path,
        prompt_path=tmp_path / ".oreo-prompt.txt",
        log_path=None,
        agent=AgentConfig(command=f"bash {agent}"),
        base_env={"PATH": "/usr/bin:/bin"},
        echo=False,
    )

    result = asyncio.run(backend.run("echoed through the wrapper", MODEL, SubscriptionProvider()))

    assert result.ok
    assert "args: --model haiku-4-5 --print --dangerously-skip-permissions" in result.output
    assert "echoed through the wrapper" in result.output


def test_timeout_markers_are_structured_after_unterminated_output(
    tmp_path: Path, execution_log: Path
) -> None:
    logging.getLogger("oroboreo.loop").info("Task 1: Build thing")
    backend = _backend(
        tmp_path,
        "trap '' TERM\nprintf 'working...'\nsleep 30\n",
        timeouts=TimeoutsConfig(task_timeout_ms=500, kill_grace_ms=200, heartbeat_ms=60_000),
    )

    result = asyncio.run(backend.run("prompt", MODEL, SubscriptionProvider()))

    assert result.timed_out
    lines = execution_log.read_text(encoding="utf-8").splitlines()
    assert "working..." in lines
    messages = [match.group("message") for match in map(RECORD_PATTERN.match, lines) if match]
    timeout_at = messages.index("Task execution timeout after 0.5s")
    kill_at = next(
        index
        for index, message in enumerate(messages)
        if message.startswith("Force killed hung process")
    )
    assert timeout_at < kill_at
    (task,) = analyze_log_file(execution_log).tasks
    assert task.status is TaskStatus.HUNG
    assert task.cause is HangCause.TASK_TIMEOUT


def _process_gone(pid: int) -> bool:
    try:
        stat = Path(f"/proc/{pid}/stat").read_text(encoding="utf-8")
    except FileNotFoundError:
        return True
    return stat.rsplit(")", 1)[1].split()[0] in {"Z", "X"}


@pytest.mark.skipif(not Path("/proc/self/stat").exists(), reason="needs procfs")
def test_leftover_descendants_are_stopped_after_clean_exit(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="oroboreo")
    backend = _backend(
        tmp_path,
        'sleep 30 &\necho "$!" > grandchild.pid\necho done\n',
        timeouts=TimeoutsConfig(heartbeat_ms=60_000),
    )

    started = time.monotonic()
    result = asyncio.run(backend.run("prompt", MODEL, SubscriptionProvider()))

    assert result.ok
    assert "done" in result.output
    assert time.monotonic() - started < 10
    assert "Stopping leftover agent processes" in caplog.text
    grandchild = int((tmp_path / "grandchild.pid").read_text(encoding="utf-8"))
    deadline = time.monotonic() + 5
    while not _process_gone(grandchild) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert _process_gone(grandchild)
