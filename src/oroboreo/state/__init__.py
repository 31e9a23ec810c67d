from oroboreo.state.git import GitCommandError, GitRepository, GitTimeoutError
from oroboreo.state.session import (
    CommitResult,
    CommitStatus,
    SessionBranchManager,
    SessionSetup,
)

__all__ = [
    "CommitResult",
    "CommitStatus",
    "GitCommandError",
    "GitRepository",
    "GitTimeoutError",
    "SessionBranchManager",
    "SessionSetup",
]
