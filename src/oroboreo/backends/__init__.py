from oroboreo.backends.base import AgentBackend, AgentOutcome, AgentResult
from oroboreo.backends.claude import ClaudeCodeBackend

__all__ = [
    "AgentBackend",
    "AgentOutcome",
    "AgentResult",
    "ClaudeCodeBackend",
]
