from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

WORKDIR_NAME = "oroboreo"
CONFIG_FILENAME = "oroboreo.toml"

ENV_TASK_TIMEOUT = "OREO_TASK_TIMEOUT_MS"
ENV_GIT_TIMEOUT = "OREO_GIT_TIMEOUT_MS"
ENV_HEARTBEAT = "OREO_HEARTBEAT_MS"


class ConfigError(ValueError):
    """Raised when configuration values cannot be parsed."""


class PreconditionError(RuntimeError):
    """Raised when a required working file or credential is missing."""


@dataclass(slots=True)
class LoopConfig:
    max_global_loops: int = 100
    max_retries_per_task: int = 5
    cooldown_seconds: float = 5.0
    memory_head_chars: int = 5000
    memory_tail_chars: int = 50000


@dataclass(slots=True)
class TimeoutsConfig:
    task_timeout_ms: int = 1_800_000
    git_timeout_ms: int = 60_000
    heartbeat_ms: int = 60_000
    silence_warning_ms: int = 300_000
    kill_grace_ms: int = 5_000

    @property
    def task_timeout_seconds(self) -> float:
        return self.task_timeout_ms / 1000.0

    @property
    def git_timeout_seconds(self) -> float:
        return self.git_timeout_ms / 1000.0

    @property
    def heartbeat_seconds(self) -> float:
        return self.heartbeat_ms / 1000.0

    @property
    def silence_warning_seconds(self) -> float:
        return self.silence_warning_ms / 1000.0

    @property
    def kill_grace_seconds(self) -> float:
        return self.kill_grace_ms / 1000.0


@dataclass(slots=True)
class GitConfig:
    base_branch: str = "main"
    branch_prefix: str = "oreo-"
    commit_on_success: bool = True
    auto_create_pr: bool = True
    pr_title_format: str = "Oroboreo: {session_name}"


@dataclass(slots=True)
class AgentConfig:
    wrapper: str = ""
    shell: str = "bash"
    command: str = "npx @anthropic-ai/claude-code"


@dataclass(slots=True)
class OroboreoConfig:
    loop: LoopConfig = field(default_factory=LoopConfig)
    timeouts: TimeoutsConfig = field(default_factory=TimeoutsConfig)
    git: GitConfig = field(default_factory=GitConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)

    @classmethod
    def default(cls) -> OroboreoConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> OroboreoConfig:
        try:
            return cls(
                loop=LoopConfig(**data.get("loop", {})),
                timeouts=TimeoutsConfig(**data.get("timeouts", {})),
                git=GitConfig(**data.get("git", {})),
                agent=AgentConfig(**data.get("agent", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc

    def to_dict(self) -> dict:
        return {
            "loop": {
                "max_global_loops": self.loop.max_global_loops,
                "max_retries_per_task": self.loop.max_retries_per_task,
                "cooldown_seconds": self.loop.cooldown_seconds,
                "memory_head_chars": self.loop.memory_head_chars,
                "memory_tail_chars": self.loop.memory_tail_chars,
            },
            "timeouts": {
                "task_timeout_ms": self.timeouts.task_timeout_ms,
                "git_timeout_ms": self.timeouts.git_timeout_ms,
                "heartbeat_ms": self.timeouts.heartbeat_ms,
                "silence_warning_ms": self.timeouts.silence_warning_ms,
                "kill_grace_ms": self.timeouts.kill_grace_ms,
            },
            "git": {
                "base_branch": self.git.base_branch,
                "branch_prefix": self.git.branch_prefix,
                "commit_on_success": self.git.commit_on_success,
                "auto_create_pr": self.git.auto_create_pr,
                "pr_title_format": self.git.pr_title_format,
            },
            "agent": {
                "wrapper": self.agent.wrapper,
                "shell": self.agent.shell,
                "command": self.agent.command,
            },
        }


@dataclass(frozen=True, slots=True)
class WorkspacePaths:
    """Fixed file layout of the project-local working directory."""

    project_root: Path
    workdir: Path

    @classmethod
    def from_root(cls, project_root: Path) -> WorkspacePaths:
        root = project_root.resolve()
        return cls(project_root=root, workdir=root / WORKDIR_NAME)

    @property
    def tasks(self) -> Path:
        return self.workdir / "cookie-crumbs.md"

    @property
    def rules(self) -> Path:
        return self.workdir / "creme-filling.md"

    @property
    def progress(self) -> Path:
        return self.workdir / "progress.txt"

    @property
    def costs(self) -> Path:
        return self.workdir / "costs.json"

    @property
    def log(self) -> Path:
        return self.workdir / "oreo-execution.log"

    @property
    def feedback(self) -> Path:
        return self.workdir / "human-feedback.md"

    @property
    def prompt(self) -> Path:
        return self.workdir / ".oreo-prompt.txt"

    @property
    def env_file(self) -> Path:
        return self.workdir / ".env"

    @property
    def config_file(self) -> Path:
        return self.workdir / CONFIG_FILENAME

    @property
    def tests(self) -> Path:
        return self.workdir / "tests"

    @property
    def reusable_tests(self) -> Path:
        return self.tests / "reusable"

    @property
    def archives(self) -> Path:
        return self.workdir / "archives"

    @property
    def temp_prompt_files(self) -> list[Path]:
        return [
            self.prompt,
            self.workdir / ".architect-prompt.txt",
            self.workdir / ".generate-prompt.txt",
            self.workdir / ".init-prompt.txt",
        ]


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: OroboreoConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["loop", "timeouts", "git", "agent"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> OroboreoConfig:
    if not path.exists():
        return OroboreoConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return OroboreoConfig.from_dict(data)


def save_config(path: Path, config: OroboreoConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")


def _env_millis(environ: Mapping[str, str], name: str) -> int | None:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer number of milliseconds, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def apply_env_overrides(
    config: OroboreoConfig, environ: Mapping[str, str] | None = None
) -> OroboreoConfig:
    env = os.environ if environ is None else environ
    task_timeout = _env_millis(env, ENV_TASK_TIMEOUT)
    if task_timeout is not None:
        config.timeouts.task_timeout_ms = task_timeout
    git_timeout = _env_millis(env, ENV_GIT_TIMEOUT)
    if git_timeout is not None:
        config.timeouts.git_timeout_ms = git_timeout
    heartbeat = _env_millis(env, ENV_HEARTBEAT)
    if heartbeat is not None:
        config.timeouts.heartbeat_ms = heartbeat
    return config
