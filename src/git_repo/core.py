"""
git-repo: Manage multiple git repositories with ease.

Keeps a registry of named clones and runs pull, status, sync or an arbitrary
command across all of them, collecting one outcome per repository so that a
broken repository never stops the others.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path

import pygit2
import typer
from pygit2.enums import MergeAnalysis
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn

from ._version import __version__
from .credentials import CancelToken, CredentialResolver, RemoteCallbacks
from .errors import (
    AuthenticationError,
    CloneError,
    CommandFailedError,
    ConfigurationError,
    DivergedError,
    FilesystemError,
    GitRepoError,
    NameRequiredError,
    NetworkError,
    NoUpstreamError,
    NotFoundError,
    OpenError,
    OperationCancelledError,
    RegisteredNotSavedError,
)
from .formatters import OutputFormatter
from .registry import (
    CONFIG_ENV_VAR,
    Repository,
    RepositoryRegistry,
    canonical_path,
    load_registry,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Domain Models
# =============================================================================


class SyncStatus(StrEnum):
    """Repository sync status with its upstream."""

    CLEAN = "clean"
    AHEAD = "ahead"
    BEHIND = "behind"
    DIVERGED = "diverged"
    NO_UPSTREAM = "no_upstream"
    DETACHED = "detached"
    NO_REMOTE = "no_remote"


class WorkingTreeStatus(StrEnum):
    """Working tree status."""

    CLEAN = "clean"
    DIRTY = "dirty"


class PullResult(StrEnum):
    """Outcome of a successful pull."""

    UP_TO_DATE = "up_to_date"
    FAST_FORWARD = "fast_forward"


class TargetState(StrEnum):
    """Lifecycle of one target within a batch."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RepositoryStatus:
    """Status snapshot of a repository relative to its upstream."""

    path: Path
    name: str
    branch: str = ""
    remote_branch: str = ""
    sync_status: SyncStatus = SyncStatus.CLEAN
    ahead_count: int = 0
    behind_count: int = 0
    staged_count: int = 0
    unstaged_count: int = 0
    untracked_count: int = 0
    last_commit_date: datetime | None = None

    @property
    def working_tree_status(self) -> WorkingTreeStatus:
        """Check if working tree is dirty."""
        if self.staged_count > 0 or self.unstaged_count > 0 or self.untracked_count > 0:
            return WorkingTreeStatus.DIRTY
        return WorkingTreeStatus.CLEAN

    @property
    def needs_push(self) -> bool:
        return self.sync_status in (SyncStatus.AHEAD, SyncStatus.DIVERGED)

    @property
    def needs_pull(self) -> bool:
        return self.sync_status in (SyncStatus.BEHIND, SyncStatus.DIVERGED)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON output."""
        return {
            "path": str(self.path),
            "name": self.name,
            "branch": self.branch,
            "remote_branch": self.remote_branch,
            "sync_status": self.sync_status.value,
            "ahead_count": self.ahead_count,
            "behind_count": self.behind_count,
            "staged_count": self.staged_count,
            "unstaged_count": self.unstaged_count,
            "untracked_count": self.untracked_count,
            "working_tree_status": self.working_tree_status.value,
            "needs_push": self.needs_push,
            "needs_pull": self.needs_pull,
            "last_commit_date": (
                self.last_commit_date.isoformat() if self.last_commit_date else None
            ),
        }


@dataclass
class CommandResult:
    """Result of a shell command run inside a repository."""

    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def to_dict(self) -> dict:
        return {
            "command": self.command,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


@dataclass
class TargetOutcome:
    """Outcome of one operation on one repository."""

    name: str
    path: Path
    operation: str
    state: TargetState = TargetState.PENDING
    kind: str = ""
    message: str = ""
    error: str = ""
    status: RepositoryStatus | None = None
    result: CommandResult | None = None

    @property
    def success(self) -> bool:
        return self.state == TargetState.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.state == TargetState.FAILED

    def fail(self, kind: str, error: str) -> None:
        self.state = TargetState.FAILED
        self.kind = kind
        self.error = error

    @classmethod
    def cancelled(cls, name: str, path: Path, operation: str) -> TargetOutcome:
        outcome = cls(name=name, path=path, operation=operation)
        outcome.fail(OperationCancelledError.kind, "operation cancelled")
        return outcome

    def to_dict(self) -> dict:
        data = {
            "path": str(self.path),
            "name": self.name,
            "operation": self.operation,
            "state": self.state.value,
            "success": self.success,
            "kind": self.kind,
            "message": self.message,
            "error": self.error,
        }
        if self.status is not None:
            data["status"] = self.status.to_dict()
        if self.result is not None:
            data["result"] = self.result.to_dict()
        return data


@dataclass
class BatchReport:
    """All target outcomes of one batch, sorted by repository name."""

    operation: str
    outcomes: list[TargetOutcome] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return any(outcome.failed for outcome in self.outcomes)

    @property
    def failures(self) -> list[TargetOutcome]:
        return [outcome for outcome in self.outcomes if outcome.failed]

    def get(self, name: str) -> TargetOutcome | None:
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        return None

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "results": [o.to_dict() for o in self.outcomes],
            "summary": {
                "total": len(self.outcomes),
                "success": sum(1 for o in self.outcomes if o.success),
                "failed": len(self.failures),
            },
        }


# Commands: one variant per subcommand, each carrying only its own fields.


@dataclass(frozen=True)
class AddCommand:
    origin: str
    path: Path | None = None
    name: str | None = None


@dataclass(frozen=True)
class RemoveCommand:
    name: str


@dataclass(frozen=True)
class PullCommand:
    name: str | None = None


@dataclass(frozen=True)
class StatusCommand:
    name: str | None = None


@dataclass(frozen=True)
class SyncCommand:
    name: str | None = None


@dataclass(frozen=True)
class ForEachCommand:
    command: str


Command = AddCommand | RemoveCommand | PullCommand | StatusCommand | SyncCommand | ForEachCommand


def derive_name(origin: str, name: str | None = None) -> str:
    """Repository name from ``name`` or from the origin's last path segment.

    ``https://example.com/foo.git`` and ``git@example.com:team/foo.git`` both
    give ``foo``.
    """
    if name is not None:
        name = name.strip()
        if not name:
            raise NameRequiredError(origin)
        return name

    segment = re.split(r"[/:\\]", origin.rstrip("/\\"))[-1]
    if segment.endswith(".git"):
        segment = segment[: -len(".git")]
    if not segment or segment in (".", ".."):
        raise NameRequiredError(origin)
    return segment


def default_max_workers() -> int:
    return min(32, 2 * (os.cpu_count() or 1))


# =============================================================================
# Git Operations (Low-level)
# =============================================================================


# libgit2 reports rejected http credentials as "unexpected http status code: 401"
AUTH_ERROR_MARKERS = (
    "authentication",
    "credentials",
    "status code: 401",
    "status code: 403",
    "permission denied",
)


def _transport_error(operation: str, url: str, error: Exception) -> GitRepoError:
    """Classify a libgit2 transport failure."""
    reason = str(error)
    if any(marker in reason.lower() for marker in AUTH_ERROR_MARKERS):
        return AuthenticationError(f"failed to {operation} '{url}': {reason}", url=url)
    return NetworkError(f"failed to {operation} '{url}': {reason}")


class GitOperations:
    """Git operations against a single local path.

    Network operations go through pygit2 so that credential challenges reach
    the ``CredentialResolver``; read-only queries use the git command line.
    """

    def __init__(
        self,
        repo_path: Path,
        resolver: CredentialResolver | None = None,
        token: CancelToken | None = None,
    ):
        self.repo_path = repo_path
        self.resolver = resolver or CredentialResolver()
        self.token = token

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a git command in the repository."""
        return subprocess.run(
            ["git", *args],
            cwd=self.repo_path,
            capture_output=True,
            text=True,
            check=check,
        )

    def _callbacks(self) -> RemoteCallbacks:
        return RemoteCallbacks(self.resolver, self.token)

    def check_cancelled(self) -> None:
        """Raise ``OperationCancelledError`` once the batch has been cancelled."""
        if self.token is not None:
            self.token.raise_if_cancelled()

    def clone(self, origin: str) -> pygit2.Repository:
        """Clone ``origin`` into the local path, with all tags."""
        path = self.repo_path
        if path.exists() and (not path.is_dir() or any(path.iterdir())):
            raise CloneError(
                origin, path, "destination exists and is not an empty directory", "path_not_empty"
            )
        created = not path.exists()

        try:
            repo = pygit2.clone_repository(origin, str(path), callbacks=self._callbacks())
            # tagOpt is read when the remote is looked up, so fetch once more
            repo.config["remote.origin.tagOpt"] = "--tags"
            repo.remotes["origin"].fetch(callbacks=self._callbacks())
        except AuthenticationError as e:
            self._cleanup(created)
            raise CloneError(origin, path, e.message, e.kind) from e
        except OperationCancelledError:
            self._cleanup(created)
            raise
        except (pygit2.GitError, KeyError, ValueError) as e:
            self._cleanup(created)
            classified = _transport_error("clone", origin, e)
            raise CloneError(origin, path, str(e), classified.kind) from e
        except OSError as e:
            self._cleanup(created)
            raise CloneError(origin, path, e.strerror or str(e), FilesystemError.kind) from e

        logger.debug("cloned %s into %s", origin, path)
        return repo

    def _cleanup(self, created: bool) -> None:
        if created and self.repo_path.exists():
            shutil.rmtree(self.repo_path, ignore_errors=True)

    def open(self) -> pygit2.Repository:
        """Open the local clone without touching the network."""
        if not self.repo_path.is_dir():
            raise OpenError(self.repo_path, "directory does not exist")
        try:
            repo = pygit2.Repository(str(self.repo_path))
        except (pygit2.GitError, KeyError) as e:
            raise OpenError(self.repo_path, f"not a git repository ({e})") from e
        if repo.is_bare or not repo.workdir:
            raise OpenError(self.repo_path, "repository has no work tree")
        if canonical_path(Path(repo.workdir)) != canonical_path(self.repo_path):
            raise OpenError(self.repo_path, "path is inside another repository")
        return repo

    def _tracking(self, repo: pygit2.Repository) -> tuple[str, str, str]:
        """Current branch name, its remote and its merge ref."""
        if repo.head_is_unborn:
            raise NoUpstreamError(self.repo_path, "current branch has no commits")
        if repo.head_is_detached:
            raise NoUpstreamError(self.repo_path, "HEAD is detached")
        branch = repo.head.shorthand
        try:
            remote_name = repo.config[f"branch.{branch}.remote"]
            merge_ref = repo.config[f"branch.{branch}.merge"]
        except KeyError:
            raise NoUpstreamError(self.repo_path, f"branch '{branch}' has no upstream") from None
        return branch, remote_name, merge_ref

    def _upstream(self, repo: pygit2.Repository, branch_name: str) -> tuple:
        branch = repo.branches.local[branch_name]
        upstream = branch.upstream
        if upstream is None:
            raise NoUpstreamError(
                self.repo_path, f"upstream of branch '{branch_name}' has not been fetched"
            )
        return branch, upstream

    def _remote(self, repo: pygit2.Repository, remote_name: str) -> pygit2.Remote:
        try:
            return repo.remotes[remote_name]
        except KeyError:
            raise NoUpstreamError(self.repo_path, f"remote '{remote_name}' does not exist") from None

    def fetch(self, repo: pygit2.Repository | None = None) -> None:
        """Fetch the remote the current branch tracks."""
        repo = repo or self.open()
        _, remote_name, _ = self._tracking(repo)
        remote = self._remote(repo, remote_name)
        try:
            remote.fetch(callbacks=self._callbacks())
        except (pygit2.GitError, KeyError, ValueError) as e:
            raise _transport_error("fetch", remote.url, e) from e

    def pull(self) -> PullResult:
        """Fetch and fast-forward the current branch.

        A branch that would need a merge raises ``DivergedError`` and is left
        untouched.
        """
        repo = self.open()
        self.fetch(repo)
        branch_name, _, _ = self._tracking(repo)
        branch, upstream = self._upstream(repo, branch_name)
        target = upstream.target

        analysis, _ = repo.merge_analysis(target)
        if analysis & MergeAnalysis.UP_TO_DATE:
            return PullResult.UP_TO_DATE
        if analysis & MergeAnalysis.FASTFORWARD:
            try:
                self.check_cancelled()
                repo.checkout_tree(repo.get(target))
            except pygit2.GitError as e:
                raise DivergedError(self.repo_path, f"local changes block the update ({e})") from e
            branch.set_target(target)
            return PullResult.FAST_FORWARD

        ahead, behind = repo.ahead_behind(branch.target, target)
        raise DivergedError(
            self.repo_path,
            f"branch '{branch_name}' has {ahead} local and {behind} remote commits",
        )

    def push(self) -> int:
        """Push the current branch to its upstream.

        Returns the number of commits pushed.
        """
        repo = self.open()
        branch_name, remote_name, merge_ref = self._tracking(repo)
        branch, upstream = self._upstream(repo, branch_name)
        ahead, behind = repo.ahead_behind(branch.target, upstream.target)
        if behind:
            raise DivergedError(
                self.repo_path, f"branch '{branch_name}' is {behind} commits behind its upstream"
            )
        if ahead == 0:
            return 0

        remote = self._remote(repo, remote_name)
        callbacks = self._callbacks()
        try:
            self.check_cancelled()
            remote.push([f"{branch.name}:{merge_ref}"], callbacks=callbacks)
        except (pygit2.GitError, KeyError, ValueError) as e:
            raise _transport_error("push to", remote.url, e) from e
        if callbacks.rejected_refs:
            reasons = ", ".join(f"{ref}: {msg}" for ref, msg in callbacks.rejected_refs.items())
            raise NetworkError(f"push to '{remote.url}' was rejected ({reasons})")
        return ahead

    def get_status_porcelain(self) -> dict:
        """Get branch, ahead/behind, staged/unstaged/untracked counts in one command.

        Uses 'git status --porcelain=v2 --branch' to minimize subprocess calls.
        """
        info: dict = {
            "branch": "",
            "remote_branch": "",
            "ahead": 0,
            "behind": 0,
            "staged_count": 0,
            "unstaged_count": 0,
            "untracked_count": 0,
        }
        result = self._run("status", "--porcelain=v2", "--branch", check=False)
        if result.returncode != 0:
            raise OpenError(self.repo_path, result.stderr.strip() or "git status failed")
        for line in result.stdout.splitlines():
            if line.startswith("# branch.head "):
                info["branch"] = line[len("# branch.head ") :]
            elif line.startswith("# branch.upstream "):
                info["remote_branch"] = line[len("# branch.upstream ") :]
            elif line.startswith("# branch.ab "):
                # Format: # branch.ab +<ahead> -<behind>
                parts = line.split()
                if len(parts) == 4:
                    info["ahead"] = abs(int(parts[2]))
                    info["behind"] = abs(int(parts[3]))
            elif line.startswith("1 ") or line.startswith("2 "):
                # Changed entry: XY sub mH mI mW hH hI path
                xy = line[2:4]
                if xy[0] != ".":
                    info["staged_count"] += 1
                if xy[1] != ".":
                    info["unstaged_count"] += 1
            elif line.startswith("u "):
                # Unmerged entry: counts as both staged and unstaged
                info["staged_count"] += 1
                info["unstaged_count"] += 1
            elif line.startswith("? "):
                info["untracked_count"] += 1
        return info

    def get_last_commit_date(self) -> datetime | None:
        """Get last commit date."""
        result = self._run("log", "-1", "--format=%cI", check=False)
        if result.returncode == 0 and result.stdout.strip():
            return datetime.fromisoformat(result.stdout.strip())
        return None

    def has_remotes(self) -> bool:
        """Check if any remotes are configured."""
        result = self._run("remote", check=False)
        return result.returncode == 0 and bool(result.stdout.strip())

    def status(self, name: str = "") -> RepositoryStatus:
        """Report sync and working tree state; never fetches."""
        self.open()
        status = RepositoryStatus(path=self.repo_path, name=name or self.repo_path.name)

        info = self.get_status_porcelain()
        status.branch = info["branch"]
        status.remote_branch = info["remote_branch"]
        status.ahead_count = info["ahead"]
        status.behind_count = info["behind"]
        status.staged_count = info["staged_count"]
        status.unstaged_count = info["unstaged_count"]
        status.untracked_count = info["untracked_count"]

        if status.remote_branch:
            if status.ahead_count > 0 and status.behind_count > 0:
                status.sync_status = SyncStatus.DIVERGED
            elif status.ahead_count > 0:
                status.sync_status = SyncStatus.AHEAD
            elif status.behind_count > 0:
                status.sync_status = SyncStatus.BEHIND
            else:
                status.sync_status = SyncStatus.CLEAN
        elif status.branch == "(detached)":
            status.sync_status = SyncStatus.DETACHED
        elif self.has_remotes():
            status.sync_status = SyncStatus.NO_UPSTREAM
        else:
            status.sync_status = SyncStatus.NO_REMOTE

        status.last_commit_date = self.get_last_commit_date()
        return status

    def run(self, command: str, timeout: float | None = None) -> CommandResult:
        """Run a shell command with the work tree as working directory."""
        if not self.repo_path.is_dir():
            raise FilesystemError("run a command in", self.repo_path, "directory does not exist")
        try:
            result = subprocess.run(
                command,
                shell=True,
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise OperationCancelledError(f"command '{command}' timed out") from e
        return CommandResult(
            command=command,
            exit_code=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )


# =============================================================================
# Repository Manager
# =============================================================================


class GitRepository:
    """One registered repository as the target of a batch."""

    def __init__(
        self,
        repo: Repository,
        resolver: CredentialResolver | None = None,
        token: CancelToken | None = None,
    ):
        self.path = repo.path
        self.name = repo.name
        self.token = token
        self.ops = GitOperations(repo.path, resolver, token)

    def _attempt(self, operation: str, action: Callable[[TargetOutcome], None]) -> TargetOutcome:
        """Run ``action`` and turn any failure into a failed outcome."""
        outcome = TargetOutcome(name=self.name, path=self.path, operation=operation)
        try:
            if self.token is not None:
                self.token.raise_if_cancelled()
            outcome.state = TargetState.RUNNING
            logger.debug("%s: %s started", self.name, operation)
            action(outcome)
            outcome.state = TargetState.SUCCEEDED
        except GitRepoError as e:
            outcome.fail(e.kind, str(e))
        except Exception as e:
            logger.debug("%s: unexpected %s failure", self.name, operation, exc_info=True)
            outcome.fail("internal", str(e))

        if outcome.failed:
            logger.error("%s: %s failed: %s", self.name, operation, outcome.error)
        else:
            logger.info("%s: %s %s", self.name, operation, outcome.message or "done")
        return outcome

    def status(self) -> TargetOutcome:
        def action(outcome: TargetOutcome) -> None:
            outcome.status = self.ops.status(self.name)
            outcome.message = outcome.status.sync_status.value

        return self._attempt("status", action)

    def pull(self) -> TargetOutcome:
        def action(outcome: TargetOutcome) -> None:
            result = self.ops.pull()
            outcome.message = (
                "Already up to date" if result == PullResult.UP_TO_DATE else "Fast-forwarded"
            )

        return self._attempt("pull", action)

    def sync(self) -> TargetOutcome:
        def action(outcome: TargetOutcome) -> None:
            result = self.ops.pull()
            self.ops.check_cancelled()
            pushed = self.ops.push()
            parts = ["up to date" if result == PullResult.UP_TO_DATE else "fast-forwarded"]
            if pushed:
                parts.append(f"pushed {pushed} commit{'s' if pushed != 1 else ''}")
            outcome.message = ", ".join(parts).capitalize()

        return self._attempt("sync", action)

    def run(self, command: str) -> TargetOutcome:
        def action(outcome: TargetOutcome) -> None:
            timeout = self.token.remaining() if self.token is not None else None
            outcome.result = self.ops.run(command, timeout=timeout)
            if outcome.result.exit_code != 0:
                raise CommandFailedError(command, outcome.result.exit_code)
            outcome.message = f"exit {outcome.result.exit_code}"

        return self._attempt("foreach", action)


# =============================================================================
# Batch Orchestrator
# =============================================================================


class BatchOrchestrator:
    """Apply commands to the repositories of a registry.

    The registry is owned by the orchestrator for the whole invocation and is
    only persisted by ``add`` and ``remove``; batch workers never mutate it.
    """

    def __init__(
        self,
        registry: RepositoryRegistry,
        resolver: CredentialResolver | None = None,
        max_workers: int | None = None,
        *,
        sequential: bool = False,
        timeout: float | None = None,
    ):
        self.registry = registry
        self.resolver = resolver or CredentialResolver()
        self.max_workers = max_workers or default_max_workers()
        self.sequential = sequential
        self.timeout = timeout

    def execute(self, command: Command) -> BatchReport | Repository | None:
        match command:
            case AddCommand(origin=origin, path=path, name=name):
                return self.add(origin, path, name)
            case RemoveCommand(name=name):
                return self.remove(name)
            case PullCommand(name=name):
                return self.pull(name)
            case StatusCommand(name=name):
                return self.status(name)
            case SyncCommand(name=name):
                return self.sync(name)
            case ForEachCommand(command=shell_command):
                return self.foreach(shell_command)
            case _:
                raise TypeError(f"unknown command {command!r}")

    def add(self, origin: str, path: Path | None = None, name: str | None = None) -> Repository:
        """Clone ``origin`` and register it.

        Conflicts are detected before cloning. When saving fails after a
        successful clone the clone is kept and ``RegisteredNotSavedError``
        is raised.
        """
        name = derive_name(origin, name)
        target = canonical_path(path if path is not None else Path(name))
        self.registry.check_available(name, target)

        local_origin = Path(os.path.expanduser(origin))
        if local_origin.exists():
            origin = str(local_origin.resolve())

        ops = GitOperations(target, self.resolver)
        if self._is_clone_of(ops, origin):
            logger.warning("%s is already a clone of %s, registering it", target, origin)
        else:
            logger.info("cloning %s into %s", origin, target)
            ops.clone(origin)

        try:
            target = target.resolve(strict=True)
        except OSError as e:
            raise FilesystemError("resolve", target, e.strerror or str(e)) from e

        repo = Repository(name=name, path=target, origin=origin)
        self.registry.insert(repo)
        try:
            self.registry.persist()
        except ConfigurationError as e:
            raise RegisteredNotSavedError(name, target, e) from e
        return repo

    @staticmethod
    def _is_clone_of(ops: GitOperations, origin: str) -> bool:
        """Whether the local path already holds a clone of ``origin``."""
        if not ops.repo_path.exists():
            return False
        try:
            return ops.open().remotes["origin"].url == origin
        except (OpenError, KeyError):
            return False

    def remove(self, name: str) -> Repository | None:
        """Delete the clone of ``name`` and unregister it.

        Unknown names are ignored. The entry is kept if the directory cannot
        be deleted.
        """
        repo = self.registry.get(name)
        if repo is None:
            logger.info("repository '%s' is not registered, nothing to remove", name)
            return None

        try:
            shutil.rmtree(repo.path)
        except FileNotFoundError:
            logger.warning("directory of '%s' is already gone: %s", name, repo.path)
        except OSError as e:
            raise FilesystemError("delete", repo.path, e.strerror or str(e)) from e

        self.registry.remove(name)
        self.registry.persist()
        return repo

    def resolve_targets(self, name: str | None = None) -> list[Repository]:
        """One named repository, or every registered one."""
        if name is None:
            return [self.registry.get(n) for n in self.registry.names()]
        repo = self.registry.get(name)
        if repo is None:
            raise NotFoundError(name)
        return [repo]

    def _execute_parallel(
        self,
        operation: str,
        repos: list[Repository],
        action: Callable[[GitRepository], TargetOutcome],
    ) -> BatchReport:
        """Execute ``action`` on every repository in parallel or sequentially.

        A timeout or interrupt stops the batch; targets that did not finish
        are reported as cancelled next to the completed ones.
        """
        token = CancelToken(self.timeout)
        targets = [GitRepository(repo, self.resolver, token) for repo in repos]
        outcomes: dict[str, TargetOutcome] = {}
        futures: dict = {}

        try:
            if self.sequential or len(targets) <= 1:
                for target in targets:
                    if token.cancelled:
                        break
                    outcomes[target.name] = action(target)
            else:
                executor = ThreadPoolExecutor(max_workers=self.max_workers)
                try:
                    futures = {executor.submit(action, target): target for target in targets}
                    for future in as_completed(futures, timeout=token.remaining()):
                        outcomes[futures[future].name] = future.result()
                finally:
                    executor.shutdown(wait=False, cancel_futures=True)
        except TimeoutError:
            token.cancel()
            logger.error("%s timed out after %ss", operation, self.timeout)
        except KeyboardInterrupt:
            token.cancel()
            logger.error("%s interrupted", operation)

        # Keep targets that finished while the batch was being cancelled
        for future, target in futures.items():
            if (
                target.name not in outcomes
                and future.done()
                and not future.cancelled()
                and future.exception() is None
            ):
                outcomes[target.name] = future.result()

        for target in targets:
            if target.name not in outcomes:
                outcomes[target.name] = TargetOutcome.cancelled(target.name, target.path, operation)

        return BatchReport(operation, [outcomes[name] for name in sorted(outcomes)])

    def pull(self, name: str | None = None) -> BatchReport:
        return self._execute_parallel("pull", self.resolve_targets(name), GitRepository.pull)

    def status(self, name: str | None = None) -> BatchReport:
        return self._execute_parallel("status", self.resolve_targets(name), GitRepository.status)

    def sync(self, name: str | None = None) -> BatchReport:
        return self._execute_parallel("sync", self.resolve_targets(name), GitRepository.sync)

    def foreach(self, command: str) -> BatchReport:
        return self._execute_parallel(
            "foreach", self.resolve_targets(), lambda target: target.run(command)
        )


# =============================================================================
# CLI Application
# =============================================================================


LOG_LEVELS = [logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG]


def configure_logging(verbosity: int = 0) -> None:
    """Send ``git_repo`` logs to stderr; each ``-v`` lowers the threshold."""
    level = LOG_LEVELS[min(max(verbosity, 0), len(LOG_LEVELS) - 1)]
    handler = RichHandler(
        console=Console(stderr=True),
        show_time=verbosity >= 3,
        show_path=verbosity >= 3,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))

    package_logger = logging.getLogger("git_repo")
    for existing in list(package_logger.handlers):
        package_logger.removeHandler(existing)
    package_logger.addHandler(handler)
    package_logger.setLevel(level)
    package_logger.propagate = False


@dataclass
class CliState:
    config_path: Path | None = None


app = typer.Typer(
    name="git-repo",
    help="Manage multiple git repositories with ease.",
    no_args_is_help=True,
)


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        print(f"git-repo {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "-v",
        count=True,
        help="Increase log verbosity (repeatable)",
    ),
    config: Path = typer.Option(
        None,
        "--config",
        "-c",
        envvar=CONFIG_ENV_VAR,
        help="Registry configuration file",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
):
    """git-repo: Manage multiple git repositories with ease."""
    configure_logging(verbose)
    ctx.obj = CliState(config_path=config)


def get_console_and_formatter(json_output: bool) -> tuple[Console, OutputFormatter]:
    """Create console and formatter."""
    console = Console(force_terminal=not json_output)
    formatter = OutputFormatter(console, use_json=json_output)
    return console, formatter


def open_orchestrator(
    ctx: typer.Context,
    *,
    sequential: bool = False,
    jobs: int | None = None,
    timeout: float | None = None,
) -> BatchOrchestrator:
    """Load the registry for this invocation, exiting on configuration errors."""
    state: CliState = ctx.obj or CliState()
    try:
        registry = load_registry(state.config_path)
    except ConfigurationError as e:
        logger.error("could not load configuration: %s", e)
        raise typer.Exit(1) from e
    return BatchOrchestrator(registry, max_workers=jobs, sequential=sequential, timeout=timeout)


def run_batch(
    orchestrator: BatchOrchestrator,
    command: Command,
    console: Console,
    json_output: bool,
    description: str,
) -> BatchReport:
    """Execute a batch command, exiting on argument errors."""
    try:
        if json_output:
            return orchestrator.execute(command)
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task(description, total=None)
            return orchestrator.execute(command)
    except GitRepoError as e:
        logger.error("%s", e)
        raise typer.Exit(1) from e


def exit_for(report: BatchReport) -> None:
    if report.failed:
        logger.error(
            "%s failed for %d of %d repositories",
            report.operation,
            len(report.failures),
            len(report.outcomes),
        )
        raise typer.Exit(1)


@app.command()
def add(
    ctx: typer.Context,
    origin: str = typer.Argument(..., help="Git url or path to clone the repository from"),
    path: Path = typer.Argument(None, help="Where to clone the repository (default: ./NAME)"),
    name: str = typer.Option(None, "--name", "-n", help="Name of the repository"),
):
    """Add a git repository to manage."""
    orchestrator = open_orchestrator(ctx)
    try:
        repo = orchestrator.execute(AddCommand(origin=origin, path=path, name=name))
    except RegisteredNotSavedError as e:
        logger.error("add: %s", e)
        logger.error("the clone was kept, run the same add again to register it")
        raise typer.Exit(1) from e
    except GitRepoError as e:
        logger.error("add: %s", e)
        raise typer.Exit(1) from e
    Console().print(f"[green]✓[/] Added [cyan]{repo.name}[/] at {repo.path}")


def _remove(ctx: typer.Context, name: str) -> None:
    orchestrator = open_orchestrator(ctx)
    try:
        repo = orchestrator.execute(RemoveCommand(name=name))
    except GitRepoError as e:
        logger.error("remove: %s", e)
        raise typer.Exit(1) from e
    if repo is None:
        Console().print(f"[dim]{name} is not registered, nothing to remove[/]")
    else:
        Console().print(f"[green]✓[/] Removed [cyan]{repo.name}[/] ({repo.path})")


@app.command()
def remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the repository"),
):
    """Remove a managed git repository and delete its clone."""
    _remove(ctx, name)


@app.command(name="rm", hidden=True)
def rm(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the repository"),
):
    """Alias of remove."""
    _remove(ctx, name)


@app.command()
def pull(
    ctx: typer.Context,
    name: str = typer.Argument(None, help="Name of the repository (default: all)"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
    sequential: bool = typer.Option(
        False, "--sequential", help="Run sequentially instead of parallel"
    ),
    jobs: int = typer.Option(None, "--jobs", help="Maximum parallel repositories"),
    timeout: float = typer.Option(None, "--timeout", help="Overall timeout in seconds"),
):
    """Pull modifications from remote git repositories."""
    console, formatter = get_console_and_formatter(json_output)
    orchestrator = open_orchestrator(ctx, sequential=sequential, jobs=jobs, timeout=timeout)
    report = run_batch(
        orchestrator, PullCommand(name=name), console, json_output, "Pulling repositories..."
    )
    formatter.print_operation_report(report)
    exit_for(report)


@app.command()
def status(
    ctx: typer.Context,
    name: str = typer.Argument(None, help="Name of the repository (default: all)"),
    strip: bool = typer.Option(False, "--strip", "-s", help="One plain line per repository"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
    sequential: bool = typer.Option(
        False, "--sequential", help="Run sequentially instead of parallel"
    ),
    jobs: int = typer.Option(None, "--jobs", help="Maximum parallel repositories"),
):
    """Retrieve status of git repositories."""
    console, formatter = get_console_and_formatter(json_output)
    orchestrator = open_orchestrator(ctx, sequential=sequential, jobs=jobs)
    report = run_batch(
        orchestrator,
        StatusCommand(name=name),
        console,
        json_output or strip,
        "Analyzing repositories...",
    )
    formatter.print_status_report(report, strip=strip)
    exit_for(report)


@app.command()
def sync(
    ctx: typer.Context,
    name: str = typer.Argument(None, help="Name of the repository (default: all)"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
    sequential: bool = typer.Option(
        False, "--sequential", help="Run sequentially instead of parallel"
    ),
    jobs: int = typer.Option(None, "--jobs", help="Maximum parallel repositories"),
    timeout: float = typer.Option(None, "--timeout", help="Overall timeout in seconds"),
):
    """Sync modifications between local and remote repositories: pull, then push."""
    console, formatter = get_console_and_formatter(json_output)
    orchestrator = open_orchestrator(ctx, sequential=sequential, jobs=jobs, timeout=timeout)
    report = run_batch(
        orchestrator, SyncCommand(name=name), console, json_output, "Syncing repositories..."
    )
    formatter.print_operation_report(report)
    exit_for(report)


@app.command()
def foreach(
    ctx: typer.Context,
    command: str = typer.Argument(..., help="Shell command to execute"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
    sequential: bool = typer.Option(
        False, "--sequential", help="Run sequentially instead of parallel"
    ),
    jobs: int = typer.Option(None, "--jobs", help="Maximum parallel repositories"),
    timeout: float = typer.Option(None, "--timeout", help="Overall timeout in seconds"),
):
    """Execute a command in each git repository."""
    console, formatter = get_console_and_formatter(json_output)
    orchestrator = open_orchestrator(ctx, sequential=sequential, jobs=jobs, timeout=timeout)
    report = run_batch(
        orchestrator,
        ForEachCommand(command=command),
        console,
        json_output,
        f"Running '{command}'...",
    )
    formatter.print_command_report(report)
    exit_for(report)


@app.command(name="list")
def list_repos(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
    paths_only: bool = typer.Option(
        False,
        "--paths",
        "-p",
        help="Output only paths (one per line, for piping to fzf etc.)",
    ),
):
    """List registered repositories."""
    _, formatter = get_console_and_formatter(json_output)
    orchestrator = open_orchestrator(ctx)
    registry = orchestrator.registry

    if paths_only:
        for repo_name in registry.names():
            print(registry.get(repo_name).path)
    else:
        formatter.print_registry(registry)
