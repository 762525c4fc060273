"""git-repo: Manage multiple git repositories with ease."""

# Guard against deleted CWD (e.g. directory removed by another process).
# rich crashes on import if os.getcwd() fails, so recover before any imports.
import os

try:
    os.getcwd()
except (OSError, PermissionError):
    os.chdir(os.path.expanduser("~"))

from ._version import __version__
from .core import (
    AddCommand,
    BatchOrchestrator,
    BatchReport,
    CommandResult,
    ForEachCommand,
    GitOperations,
    GitRepository,
    PullCommand,
    PullResult,
    RemoveCommand,
    RepositoryStatus,
    StatusCommand,
    SyncCommand,
    SyncStatus,
    TargetOutcome,
    TargetState,
    WorkingTreeStatus,
    app,
    configure_logging,
    derive_name,
)
from .credentials import CancelToken, CredentialResolver, RemoteCallbacks
from .errors import GitRepoError
from .formatters import OutputFormatter
from .registry import Repository, RepositoryRegistry, load_registry

__all__ = [
    # Version
    "__version__",
    # CLI
    "app",
    "configure_logging",
    # Models
    "BatchReport",
    "CommandResult",
    "PullResult",
    "Repository",
    "RepositoryStatus",
    "SyncStatus",
    "TargetOutcome",
    "TargetState",
    "WorkingTreeStatus",
    # Commands
    "AddCommand",
    "ForEachCommand",
    "PullCommand",
    "RemoveCommand",
    "StatusCommand",
    "SyncCommand",
    # Operations
    "BatchOrchestrator",
    "CancelToken",
    "CredentialResolver",
    "GitOperations",
    "GitRepository",
    "RemoteCallbacks",
    "RepositoryRegistry",
    # Functions
    "derive_name",
    "load_registry",
    # Errors
    "GitRepoError",
    # Formatters
    "OutputFormatter",
]
