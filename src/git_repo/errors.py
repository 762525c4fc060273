"""git-repo exception classes."""

from __future__ import annotations

from pathlib import Path


class GitRepoError(Exception):
    """Base exception for all git-repo errors.

    ``kind`` is a stable identifier reported as the failure kind of a batch
    target.
    """

    kind = "internal"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConfigurationError(GitRepoError):
    """Raised when the registry document cannot be read, parsed or saved."""

    kind = "configuration"

    def __init__(self, message: str, path: Path | None = None) -> None:
        self.path = path
        if path is not None:
            message = f"{message} ({path})"
        super().__init__(message)


class NameRequiredError(GitRepoError):
    """Raised when no repository name can be derived from the origin."""

    kind = "name_required"

    def __init__(self, origin: str) -> None:
        self.origin = origin
        super().__init__(
            f"could not derive a repository name from '{origin}', use --name"
        )


class NameConflictError(GitRepoError):
    kind = "name_conflict"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"name '{name}' is already taken by another repository")


class PathConflictError(GitRepoError):
    kind = "path_conflict"

    def __init__(self, path: Path, owner: str) -> None:
        self.path = path
        self.owner = owner
        super().__init__(f"path '{path}' is already used by repository '{owner}'")


class NotFoundError(GitRepoError):
    """Raised when a command names a repository that is not registered."""

    kind = "not_found"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"repository '{name}' is not registered")


class RegisteredNotSavedError(GitRepoError):
    """Raised when a clone succeeded but the registry could not be saved.

    The clone stays on disk. Running the same add again registers the
    existing clone instead of cloning a second time.
    """

    kind = "not_saved"

    def __init__(self, name: str, path: Path, cause: ConfigurationError) -> None:
        self.name = name
        self.path = path
        self.cause = cause
        super().__init__(
            f"repository '{name}' was cloned into '{path}' but the registry "
            f"could not be saved: {cause}"
        )


class AuthenticationError(GitRepoError):
    """Raised when every credential strategy failed or none is supported."""

    kind = "authentication"

    def __init__(self, message: str, url: str = "", method: str = "") -> None:
        self.url = url
        self.method = method
        super().__init__(message)


class NetworkError(GitRepoError):
    kind = "network"


class CloneError(GitRepoError):
    """Raised when a clone fails.

    ``kind`` is one of ``network``, ``authentication``, ``path_not_empty`` or
    ``filesystem``.
    """

    def __init__(self, origin: str, path: Path, reason: str, kind: str) -> None:
        self.origin = origin
        self.path = path
        self.reason = reason
        self.kind = kind
        super().__init__(f"failed to clone '{origin}' into '{path}': {reason}")


class OpenError(GitRepoError):
    kind = "open"

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        super().__init__(f"failed to open repository '{path}': {reason}")


class DivergedError(GitRepoError):
    """Raised when a pull would need a merge; the repository is left as is."""

    kind = "diverged"

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        super().__init__(f"'{path}' requires manual resolution: {reason}")


class NoUpstreamError(GitRepoError):
    kind = "no_upstream"

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        super().__init__(f"'{path}' has no upstream to sync with: {reason}")


class FilesystemError(GitRepoError):
    kind = "filesystem"

    def __init__(self, operation: str, path: Path, reason: str) -> None:
        self.operation = operation
        self.path = path
        super().__init__(f"failed to {operation} '{path}': {reason}")


class OperationCancelledError(GitRepoError):
    kind = "cancelled"

    def __init__(self, message: str = "operation cancelled") -> None:
        super().__init__(message)


class CommandFailedError(GitRepoError):
    """Raised when a ``foreach`` command exits with a non-zero status."""

    kind = "command"

    def __init__(self, command: str, exit_code: int) -> None:
        self.command = command
        self.exit_code = exit_code
        super().__init__(f"command '{command}' exited with status {exit_code}")
