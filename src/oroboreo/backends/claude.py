from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import sys
import time
from collections.abc import Mapping
from contextlib import ExitStack
from importlib import resources
from pathlib import Path
from typing import IO

from oroboreo.backends.base import AgentBackend, AgentOutcome, AgentResult
from oroboreo.config import AgentConfig, TimeoutsConfig
from oroboreo.models import ModelSpec
from oroboreo.providers import ProviderConfig, build_agent_env

logger = logging.getLogger(__name__)

WRAPPER_SCRIPT = "run-with-prompt.sh"
READ_CHUNK_BYTES = 4096
DRAIN_TIMEOUT_SECONDS = 2.0


class _OutputMonitor:
    """Collects interleaved stdout/stderr and tracks the last time output arrived."""

    def __init__(self, log_handle: IO[str] | None, echo: bool) -> None:
        self.log_handle = log_handle
        self.echo = echo
        self.chunks: list[str] = []
        self.last_output = time.monotonic()
        self._line_open = False

    def record(self, text: str, *, stderr: bool) -> None:
        if not text:
            return
        self.last_output = time.monotonic()
        self.chunks.append(text)
        if self.echo:
            target = sys.stderr if stderr else sys.stdout
            target.write(text)
            target.flush()
        if self.log_handle is not None:
            self.log_handle.write(text)
            self.log_handle.flush()
            self._line_open = not text.endswith("\n")

    @property
    def output(self) -> str:
        return "".join(self.chunks)

    def break_line(self) -> None:
        # structured records must start at column 0 of the execution log
        if self.log_handle is not None and self._line_open:
            self.log_handle.write("\n")
            self.log_handle.flush()
            self._line_open = False

    def finish(self) -> None:
        self.break_line()


def _signal_process_group(pid: int, sig: signal.Signals) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(pid, sig)
        else:
            os.kill(pid, sig)
    except ProcessLookupError:
        pass


class ClaudeCodeBackend(AgentBackend):
    """Runs the Claude Code CLI through the prompt-file shell wrapper.

    Credentials and model parameters travel only through the child
    environment. The whole invocation is bounded by the hard task timeout;
    the heartbeat only logs.
    """

    def __init__(
        self,
        *,
        working_directory: Path,
        prompt_path: Path,
        log_path: Path | None,
        timeouts: TimeoutsConfig | None = None,
        agent: AgentConfig | None = None,
        base_env: Mapping[str, str] | None = None,
        echo: bool = True,
    ) -> None:
        self.working_directory = working_directory
        self.prompt_path = prompt_path
        self.log_path = log_path
        self.timeouts = timeouts or TimeoutsConfig()
        self.agent = agent or AgentConfig()
        self.base_env = base_env
        self.echo = echo
        self._process: asyncio.subprocess.Process | None = None
        self._monitor: _OutputMonitor | None = None

    def _break_output_line(self) -> None:
        if self._monitor is not None:
            self._monitor.break_line()

    @property
    def in_flight(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def build_command(self, wrapper: Path, prompt_path: Path) -> list[str]:
        return [self.agent.shell, str(wrapper), str(prompt_path)]

    def build_env(self, provider: ProviderConfig, model: ModelSpec) -> dict[str, str]:
        base = os.environ if self.base_env is None else self.base_env
        env = build_agent_env(base, provider, model)
        env["OREO_AGENT_COMMAND"] = self.agent.command
        return env

    async def run(
        self,
        prompt: str,
        model: ModelSpec,
        provider: ProviderConfig,
    ) -> AgentResult:
        self.prompt_path.parent.mkdir(parents=True, exist_ok=True)
        self.prompt_path.write_text(prompt, encoding="utf-8")

        with ExitStack() as stack:
            if self.agent.wrapper:
                wrapper = Path(self.agent.wrapper)
            else:
                wrapper = stack.enter_context(
                    resources.as_file(
                        resources.files("oroboreo").joinpath("scripts", WRAPPER_SCRIPT)
                    )
                )
            if not wrapper.exists():
                logger.error("Agent wrapper script not found: %s", wrapper)
                return AgentResult(
                    outcome=AgentOutcome.FATAL_FAILURE,
                    reason=f"Agent wrapper script not found: {wrapper}",
                    spawned=False,
                )
            log_handle = None
            if self.log_path is not None:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                log_handle = stack.enter_context(self.log_path.open("a", encoding="utf-8"))
            return await self._invoke(
                self.build_command(wrapper, self.prompt_path),
                self.build_env(provider, model),
                _OutputMonitor(log_handle, self.echo),
            )

    async def _invoke(
        self,
        command: list[str],
        env: dict[str, str],
        monitor: _OutputMonitor,
    ) -> AgentResult:
        logger.info("Spawning Claude Code agent...")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            logger.error("Agent spawn error: %s", exc)
            return AgentResult(
                outcome=AgentOutcome.RETRYABLE_FAILURE,
                reason=f"Agent spawn error: {exc}",
                spawned=False,
            )

        self._process = process
        self._monitor = monitor
        pid = process.pid
        logger.info("Agent spawned (PID: %d)", pid)

        readers = [
            asyncio.create_task(self._pump(process.stdout, monitor, stderr=False)),
            asyncio.create_task(self._pump(process.stderr, monitor, stderr=True)),
        ]
        heartbeat = asyncio.create_task(self._heartbeat(pid, monitor))
        timed_out = False
        try:
            try:
                exit_code: int | None = await asyncio.wait_for(
                    process.wait(), timeout=self.timeouts.task_timeout_seconds
                )
            except TimeoutError:
                timed_out = True
                monitor.break_line()
                logger.error("Task execution timeout after %s", self._timeout_text())
                logger.error(
                    "Agent timeout detected - attempting to kill process (PID: %d)", pid
                )
                exit_code = await self._stop(process)
        finally:
            heartbeat.cancel()
            await self._drain(readers, pid)
            monitor.finish()
            self._process = None
            self._monitor = None

        logger.info("Agent exited (PID: %d, code: %s)", pid, exit_code)
        if timed_out:
            return AgentResult(
                outcome=AgentOutcome.RETRYABLE_FAILURE,
                exit_code=exit_code,
                output=monitor.output,
                reason=f"Task execution timeout after {self._timeout_text()}",
                timed_out=True,
                pid=pid,
            )
        if exit_code != 0:
            return AgentResult(
                outcome=AgentOutcome.RETRYABLE_FAILURE,
                exit_code=exit_code,
                output=monitor.output,
                reason=f"Exit code {exit_code}",
                pid=pid,
            )
        return AgentResult(
            outcome=AgentOutcome.SUCCESS,
            exit_code=exit_code,
            output=monitor.output,
            pid=pid,
        )

    @staticmethod
    async def _pump(
        stream: asyncio.StreamReader | None,
        monitor: _OutputMonitor,
        *,
        stderr: bool,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                monitor.record(decoder.decode(b"", final=True), stderr=stderr)
                return
            monitor.record(decoder.decode(chunk), stderr=stderr)

    async def _heartbeat(self, pid: int, monitor: _OutputMonitor) -> None:
        interval = max(0.01, self.timeouts.heartbeat_seconds)
        while True:
            await asyncio.sleep(interval)
            silent = time.monotonic() - monitor.last_output
            monitor.break_line()
            if silent > self.timeouts.silence_warning_seconds:
                logger.warning(
                    "WARNING: No output from agent for %ds (PID: %d)", int(silent), pid
                )
            else:
                logger.info("Agent still running (PID: %d, silent: %ds)", pid, int(silent))

    def _timeout_text(self) -> str:
        return f"{self.timeouts.task_timeout_seconds:g}s"

    async def _drain(self, readers: list[asyncio.Task[None]], pid: int) -> None:
        _, pending = await asyncio.wait(readers, timeout=DRAIN_TIMEOUT_SECONDS)
        if pending:
            # descendants outlived the wrapper and still hold its pipes
            self._break_output_line()
            logger.warning("Stopping leftover agent processes (PGID: %d)", pid)
            _signal_process_group(pid, signal.SIGTERM)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _stop(self, process: asyncio.subprocess.Process) -> int | None:
        grace = max(0.0, self.timeouts.kill_grace_seconds)
        _signal_process_group(process.pid, signal.SIGTERM)
        try:
            return await asyncio.wait_for(process.wait(), timeout=grace)
        except TimeoutError:
            pass
        _signal_process_group(process.pid, signal.SIGKILL)
        self._break_output_line()
        logger.error("Force killed hung process (PID: %d)", process.pid)
        try:
            return await asyncio.wait_for(process.wait(), timeout=max(grace, 1.0))
        except TimeoutError:
            logger.error("Agent process did not exit after SIGKILL (PID: %d)", process.pid)
            return None

    async def terminate(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        self._break_output_line()
        logger.warning("Killing child process (PID: %d)...", process.pid)
        await self._stop(process)
