from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum

from oroboreo.models import ModelSpec
from oroboreo.providers import ProviderConfig


class AgentOutcome(StrEnum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


@dataclass(slots=True)
class AgentResult:
    """Outcome of a single agent invocation; the supervisor never retries."""

    outcome: AgentOutcome
    exit_code: int | None = None
    output: str = ""
    reason: str = ""
    timed_out: bool = False
    spawned: bool = True
    pid: int | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is AgentOutcome.SUCCESS


class AgentBackend(ABC):
    @abstractmethod
    async def run(
        self,
        prompt: str,
        model: ModelSpec,
        provider: ProviderConfig,
    ) -> AgentResult:
        """Run the external agent once with the given prompt and credentials."""

    async def terminate(self) -> None:
        """Stop any in-flight invocation. Backends without a child process ignore it."""
