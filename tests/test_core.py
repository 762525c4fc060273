"""Tests for git operations and the batch orchestrator."""

import shutil
import time
import tomllib
from pathlib import Path

import pygit2
import pytest

from git_repo.core import (
    AddCommand,
    BatchOrchestrator,
    ForEachCommand,
    GitOperations,
    PullCommand,
    PullResult,
    RemoveCommand,
    StatusCommand,
    SyncStatus,
    TargetOutcome,
    TargetState,
    WorkingTreeStatus,
    _transport_error,
    derive_name,
)
from git_repo.credentials import CancelToken
from git_repo.errors import (
    AuthenticationError,
    CloneError,
    DivergedError,
    FilesystemError,
    NameConflictError,
    NameRequiredError,
    NetworkError,
    NoUpstreamError,
    NotFoundError,
    OperationCancelledError,
    OpenError,
    PathConflictError,
    RegisteredNotSavedError,
)
from git_repo.registry import Repository, RepositoryRegistry, load_registry

from .conftest import commit_file, git


@pytest.mark.unit
class TestDeriveName:
    """Tests for derive_name."""

    @pytest.mark.parametrize(
        "origin,expected",
        [
            ("https://example.com/foo.git", "foo"),
            ("https://example.com/team/foo", "foo"),
            ("https://example.com/team/foo/", "foo"),
            ("git@example.com:team/foo.git", "foo"),
            ("git@example.com:foo.git", "foo"),
            ("/srv/git/foo.git", "foo"),
            ("C:\\repos\\foo.git", "foo"),
        ],
    )
    def test_from_origin(self, origin: str, expected: str) -> None:
        assert derive_name(origin) == expected

    def test_explicit_name_wins(self) -> None:
        assert derive_name("https://example.com/foo.git", "bar") == "bar"

    @pytest.mark.parametrize("origin", ["", "/", ".git", "https://example.com/.."])
    def test_unusable_origin(self, origin: str) -> None:
        with pytest.raises(NameRequiredError):
            derive_name(origin)

    def test_blank_explicit_name(self) -> None:
        with pytest.raises(NameRequiredError):
            derive_name("https://example.com/foo.git", "  ")


@pytest.mark.unit
class TestTransportError:
    """Tests for classifying libgit2 transport failures."""

    @pytest.mark.parametrize(
        "message",
        [
            "unexpected http status code: 401",
            "unexpected http status code: 403",
            "too many redirects or authentication replays",
            "ERROR: Permission denied (publickey).",
        ],
    )
    def test_authentication(self, message: str) -> None:
        error = _transport_error("fetch", "https://example.com/foo.git", pygit2.GitError(message))

        assert isinstance(error, AuthenticationError)

    @pytest.mark.parametrize(
        "message",
        [
            "failed to resolve path '/srv/git/build4031.git': No such file or directory",
            "unexpected http status code: 404 for https://example.com/r401/foo.git",
            "failed to connect to example.com: Connection refused",
        ],
    )
    def test_network(self, message: str) -> None:
        error = _transport_error("fetch", "/srv/git/build4031.git", pygit2.GitError(message))

        assert isinstance(error, NetworkError)
        assert error.kind == "network"


@pytest.mark.unit
class TestExecuteParallel:
    """Tests for batch collection, without git."""

    @staticmethod
    def succeed(target) -> TargetOutcome:
        return TargetOutcome(
            name=target.name, path=target.path, operation="test", state=TargetState.SUCCEEDED
        )

    @pytest.mark.parametrize("sequential", [False, True])
    def test_one_outcome_per_target(
        self, plain_registry: RepositoryRegistry, sequential: bool
    ) -> None:
        def action(target):
            outcome = self.succeed(target)
            if target.name in ("a", "c"):
                outcome.fail("network", f"{target.name} is unreachable")
            return outcome

        orchestrator = BatchOrchestrator(plain_registry, sequential=sequential)
        report = orchestrator._execute_parallel(
            "test", orchestrator.resolve_targets(), action
        )

        assert [o.name for o in report.outcomes] == ["a", "b", "c"]
        assert report.failed
        assert [o.name for o in report.failures] == ["a", "c"]
        assert report.get("b").success

    def test_interrupt_keeps_finished_outcomes(
        self, plain_registry: RepositoryRegistry
    ) -> None:
        def action(target):
            if target.name == "b":
                raise KeyboardInterrupt
            return self.succeed(target)

        orchestrator = BatchOrchestrator(plain_registry, sequential=True)
        report = orchestrator._execute_parallel(
            "test", orchestrator.resolve_targets(), action
        )

        assert report.get("a").success
        assert report.get("b").kind == "cancelled"
        assert report.get("c").kind == "cancelled"

    def test_interrupt_in_parallel(self, plain_registry: RepositoryRegistry) -> None:
        def action(target):
            if target.name == "b":
                raise KeyboardInterrupt
            return self.succeed(target)

        orchestrator = BatchOrchestrator(plain_registry, max_workers=3)
        report = orchestrator._execute_parallel(
            "test", orchestrator.resolve_targets(), action
        )

        assert len(report.outcomes) == 3
        assert report.get("b").kind == "cancelled"

    def test_unknown_target(self, plain_registry: RepositoryRegistry) -> None:
        orchestrator = BatchOrchestrator(plain_registry)

        with pytest.raises(NotFoundError):
            orchestrator.execute(PullCommand(name="missing"))

    def test_empty_registry(self, registry: RepositoryRegistry) -> None:
        report = BatchOrchestrator(registry).execute(StatusCommand())

        assert report.outcomes == []
        assert not report.failed

    def test_report_to_dict(self, plain_registry: RepositoryRegistry) -> None:
        orchestrator = BatchOrchestrator(plain_registry)
        report = orchestrator._execute_parallel(
            "test", orchestrator.resolve_targets(), self.succeed
        )

        data = report.to_dict()
        assert data["operation"] == "test"
        assert data["summary"] == {"total": 3, "success": 3, "failed": 0}
        assert data["results"][0]["state"] == "succeeded"


@pytest.mark.integration
class TestAdd:
    """Tests for BatchOrchestrator.add."""

    def test_add_derives_name_and_path(
        self, registry: RepositoryRegistry, make_remote, isolated_env: Path
    ) -> None:
        bare, _ = make_remote("foo")

        repo = BatchOrchestrator(registry).execute(AddCommand(origin=str(bare)))

        assert repo.name == "foo"
        assert repo.path == isolated_env.resolve() / "foo"
        assert (isolated_env / "foo" / "README.md").is_file()

        with open(registry.path, "rb") as f:
            document = tomllib.load(f)
        assert document["repositories"]["foo"] == {
            "path": str(isolated_env.resolve() / "foo"),
            "origin": str(bare.resolve()),
        }

    def test_add_with_name_and_path(
        self, registry: RepositoryRegistry, make_remote, tmp_path: Path
    ) -> None:
        bare, _ = make_remote("foo")
        target = tmp_path / "clones" / "custom"

        repo = BatchOrchestrator(registry).add(str(bare), target, "bar")

        assert repo.name == "bar"
        assert repo.path == target.resolve()
        assert load_registry(registry.path).get("bar").path == target.resolve()

    def test_add_fetches_tags(
        self, registry: RepositoryRegistry, make_remote, tmp_path: Path
    ) -> None:
        bare, seed = make_remote("foo")
        git("tag", "v1.0", cwd=seed)
        git("push", "origin", "v1.0", cwd=seed)

        repo = BatchOrchestrator(registry).add(str(bare))

        assert "v1.0" in git("tag", cwd=repo.path).splitlines()

    def test_name_conflict_does_not_clone(
        self, registry: RepositoryRegistry, make_remote, isolated_env: Path
    ) -> None:
        bare, _ = make_remote("foo")
        registry.insert(Repository(name="foo", path=isolated_env / "elsewhere"))

        with pytest.raises(NameConflictError):
            BatchOrchestrator(registry).add(str(bare))

        assert not (isolated_env / "foo").exists()
        assert not registry.path.exists()

    def test_path_conflict_does_not_clone(
        self, registry: RepositoryRegistry, make_remote, isolated_env: Path
    ) -> None:
        bare, _ = make_remote("foo")
        registry.insert(Repository(name="other", path=isolated_env / "foo"))

        with pytest.raises(PathConflictError):
            BatchOrchestrator(registry).add(str(bare))

        assert not (isolated_env / "foo").exists()

    def test_clone_into_non_empty_directory(
        self, registry: RepositoryRegistry, make_remote, isolated_env: Path
    ) -> None:
        bare, _ = make_remote("foo")
        (isolated_env / "foo").mkdir()
        (isolated_env / "foo" / "keep.txt").write_text("mine")

        with pytest.raises(CloneError) as exc_info:
            BatchOrchestrator(registry).add(str(bare))

        assert exc_info.value.kind == "path_not_empty"
        assert (isolated_env / "foo" / "keep.txt").read_text() == "mine"
        assert not registry.contains("foo")

    def test_failed_clone_leaves_nothing(
        self, registry: RepositoryRegistry, tmp_path: Path, isolated_env: Path
    ) -> None:
        with pytest.raises(CloneError) as exc_info:
            BatchOrchestrator(registry).add(str(tmp_path / "missing.git"))

        assert exc_info.value.kind == "network"
        assert not (isolated_env / "missing").exists()
        assert not registry.contains("missing")

    def test_registered_not_saved_then_retry(
        self, make_remote, tmp_path: Path, isolated_env: Path
    ) -> None:
        bare, _ = make_remote("foo")
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        registry = RepositoryRegistry(blocker / "config.toml")

        with pytest.raises(RegisteredNotSavedError) as exc_info:
            BatchOrchestrator(registry).add(str(bare))

        assert exc_info.value.path == isolated_env.resolve() / "foo"
        assert (isolated_env / "foo" / ".git").is_dir()

        retry = RepositoryRegistry(tmp_path / "config.toml")
        repo = BatchOrchestrator(retry).add(str(bare))

        assert repo.path == isolated_env.resolve() / "foo"
        assert load_registry(retry.path).contains("foo")


@pytest.mark.integration
class TestRemove:
    """Tests for BatchOrchestrator.remove."""

    def test_remove_deletes_clone_and_entry(
        self, registry: RepositoryRegistry, make_remote
    ) -> None:
        bare, _ = make_remote("foo")
        orchestrator = BatchOrchestrator(registry)
        repo = orchestrator.add(str(bare))

        removed = orchestrator.execute(RemoveCommand(name="foo"))

        assert removed == repo
        assert not repo.path.exists()
        assert not load_registry(registry.path).contains("foo")

    def test_remove_unknown_name(self, registry: RepositoryRegistry) -> None:
        assert BatchOrchestrator(registry).remove("missing") is None
        assert not registry.path.exists()

    def test_remove_already_deleted_directory(
        self, registry: RepositoryRegistry, tmp_path: Path
    ) -> None:
        registry.insert(Repository(name="gone", path=tmp_path / "gone"))

        BatchOrchestrator(registry).remove("gone")

        assert not load_registry(registry.path).contains("gone")

    def test_undeletable_directory_keeps_entry(
        self, plain_registry: RepositoryRegistry, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def failing_rmtree(path, *args, **kwargs):
            raise PermissionError(13, "Permission denied", str(path))

        monkeypatch.setattr(shutil, "rmtree", failing_rmtree)

        with pytest.raises(FilesystemError):
            BatchOrchestrator(plain_registry).remove("a")

        assert plain_registry.contains("a")


@pytest.fixture
def cloned(registry: RepositoryRegistry, make_remote):
    """Orchestrator with a clone of remote 'foo', plus the remote's seed clone."""
    bare, seed = make_remote("foo")
    orchestrator = BatchOrchestrator(registry)
    repo = orchestrator.add(str(bare))
    return orchestrator, repo, bare, seed


@pytest.mark.integration
class TestPull:
    """Tests for pull."""

    def test_up_to_date(self, cloned) -> None:
        _, repo, _, _ = cloned

        assert GitOperations(repo.path).pull() == PullResult.UP_TO_DATE

    def test_fast_forward(self, cloned) -> None:
        _, repo, _, seed = cloned
        head = commit_file(seed, "new.txt", "hello\n")
        git("push", "origin", "main", cwd=seed)

        assert GitOperations(repo.path).pull() == PullResult.FAST_FORWARD
        assert git("rev-parse", "HEAD", cwd=repo.path) == head
        assert (repo.path / "new.txt").read_text() == "hello\n"

    def test_diverged_is_left_untouched(self, cloned) -> None:
        _, repo, _, seed = cloned
        commit_file(seed, "remote.txt", "remote\n")
        git("push", "origin", "main", cwd=seed)
        local_head = commit_file(repo.path, "local.txt", "local\n")

        with pytest.raises(DivergedError, match="1 local and 1 remote"):
            GitOperations(repo.path).pull()

        assert git("rev-parse", "HEAD", cwd=repo.path) == local_head
        assert not (repo.path / "remote.txt").exists()

    def test_detached_head(self, cloned) -> None:
        _, repo, _, _ = cloned
        git("checkout", "--detach", cwd=repo.path)

        with pytest.raises(NoUpstreamError):
            GitOperations(repo.path).pull()

    def test_missing_directory(self, tmp_path: Path) -> None:
        with pytest.raises(OpenError):
            GitOperations(tmp_path / "missing").pull()

    def test_batch_with_one_unreachable_remote(
        self, registry: RepositoryRegistry, make_remote
    ) -> None:
        bare_a, seed_a = make_remote("a")
        bare_b, _ = make_remote("b")
        orchestrator = BatchOrchestrator(registry)
        repo_a = orchestrator.add(str(bare_a))
        orchestrator.add(str(bare_b))

        head = commit_file(seed_a, "new.txt", "hello\n")
        git("push", "origin", "main", cwd=seed_a)
        shutil.rmtree(bare_b)

        report = orchestrator.execute(PullCommand())

        assert report.failed
        assert len(report.outcomes) == 2
        assert report.get("a").success
        assert report.get("a").message == "Fast-forwarded"
        assert report.get("b").kind == "network"
        assert git("rev-parse", "HEAD", cwd=repo_a.path) == head

    def test_batch_single_target(self, cloned) -> None:
        orchestrator, _, _, _ = cloned

        report = orchestrator.pull("foo")

        assert [o.name for o in report.outcomes] == ["foo"]
        assert report.get("foo").message == "Already up to date"


@pytest.mark.integration
class TestStatus:
    """Tests for status."""

    def test_clean(self, cloned) -> None:
        orchestrator, _, _, _ = cloned

        status = orchestrator.status().get("foo").status

        assert status.branch == "main"
        assert status.remote_branch == "origin/main"
        assert status.sync_status == SyncStatus.CLEAN
        assert status.working_tree_status == WorkingTreeStatus.CLEAN
        assert status.last_commit_date is not None

    def test_counts(self, cloned) -> None:
        orchestrator, repo, _, _ = cloned
        commit_file(repo.path, "one.txt", "1\n")
        commit_file(repo.path, "two.txt", "2\n")
        (repo.path / "README.md").write_text("changed\n")
        (repo.path / "staged.txt").write_text("staged\n")
        git("add", "staged.txt", cwd=repo.path)
        (repo.path / "untracked.txt").write_text("?\n")

        status = orchestrator.status("foo").get("foo").status

        assert status.sync_status == SyncStatus.AHEAD
        assert status.ahead_count == 2
        assert status.behind_count == 0
        assert status.staged_count == 1
        assert status.unstaged_count == 1
        assert status.untracked_count == 1
        assert status.needs_push

    def test_does_not_fetch(self, cloned) -> None:
        orchestrator, _, _, seed = cloned
        commit_file(seed, "new.txt", "hello\n")
        git("push", "origin", "main", cwd=seed)

        status = orchestrator.status().get("foo").status

        assert status.behind_count == 0

    def test_no_remote(self, registry: RepositoryRegistry, tmp_path: Path) -> None:
        path = tmp_path / "local"
        path.mkdir()
        git("init", "-b", "main", cwd=path)
        commit_file(path, "a.txt", "a\n")
        registry.insert(Repository(name="local", path=path))

        status = BatchOrchestrator(registry).status().get("local").status

        assert status.sync_status == SyncStatus.NO_REMOTE

    def test_broken_targets_are_reported(
        self, plain_registry: RepositoryRegistry, tmp_path: Path
    ) -> None:
        shutil.rmtree(tmp_path / "plain" / "b")

        report = BatchOrchestrator(plain_registry).execute(StatusCommand())

        assert len(report.outcomes) == 3
        assert all(o.kind == "open" for o in report.outcomes)
        assert "does not exist" in report.get("b").error

    def test_path_inside_other_repository(self, cloned) -> None:
        _, repo, _, _ = cloned
        nested = repo.path / "sub"
        nested.mkdir()

        with pytest.raises(OpenError, match="inside another repository"):
            GitOperations(nested).open()


@pytest.mark.integration
class TestSync:
    """Tests for sync."""

    def test_pushes_local_commits(self, cloned) -> None:
        orchestrator, repo, bare, _ = cloned
        head = commit_file(repo.path, "local.txt", "local\n")

        report = orchestrator.sync()

        outcome = report.get("foo")
        assert outcome.success
        assert outcome.message == "Up to date, pushed 1 commit"
        assert git("rev-parse", "main", cwd=bare) == head

    def test_pull_then_nothing_to_push(self, cloned) -> None:
        orchestrator, repo, _, seed = cloned
        head = commit_file(seed, "new.txt", "hello\n")
        git("push", "origin", "main", cwd=seed)

        outcome = orchestrator.sync().get("foo")

        assert outcome.message == "Fast-forwarded"
        assert git("rev-parse", "HEAD", cwd=repo.path) == head

    def test_diverged_is_not_pushed(self, cloned) -> None:
        orchestrator, repo, bare, seed = cloned
        remote_head = commit_file(seed, "remote.txt", "remote\n")
        git("push", "origin", "main", cwd=seed)
        commit_file(repo.path, "local.txt", "local\n")

        outcome = orchestrator.sync().get("foo")

        assert outcome.kind == "diverged"
        assert git("rev-parse", "main", cwd=bare) == remote_head

    def test_cancelled_push_leaves_remote(self, cloned) -> None:
        _, repo, bare, _ = cloned
        remote_head = git("rev-parse", "main", cwd=bare)
        commit_file(repo.path, "local.txt", "local\n")
        token = CancelToken()
        token.cancel()

        with pytest.raises(OperationCancelledError):
            GitOperations(repo.path, token=token).push()

        assert git("rev-parse", "main", cwd=bare) == remote_head

    def test_cancelled_pull_leaves_work_tree(self, cloned) -> None:
        _, repo, _, seed = cloned
        local_head = git("rev-parse", "HEAD", cwd=repo.path)
        commit_file(seed, "new.txt", "hello\n")
        git("push", "origin", "main", cwd=seed)
        token = CancelToken()
        token.cancel()

        with pytest.raises(OperationCancelledError):
            GitOperations(repo.path, token=token).pull()

        assert git("rev-parse", "HEAD", cwd=repo.path) == local_head
        assert not (repo.path / "new.txt").exists()

    @pytest.mark.parametrize("sequential", [False, True])
    def test_timeout_during_sync_never_pushes(
        self,
        registry: RepositoryRegistry,
        make_remote,
        monkeypatch: pytest.MonkeyPatch,
        sequential: bool,
    ) -> None:
        bare_a, _ = make_remote("a")
        bare_b, _ = make_remote("b")
        setup = BatchOrchestrator(registry)
        repo_a = setup.add(str(bare_a))
        setup.add(str(bare_b))
        remote_head = git("rev-parse", "main", cwd=bare_a)
        commit_file(repo_a.path, "local.txt", "local\n")

        pull = GitOperations.pull

        def slow_pull(self):
            time.sleep(0.6)
            return pull(self)

        monkeypatch.setattr(GitOperations, "pull", slow_pull)

        report = BatchOrchestrator(registry, sequential=sequential, timeout=0.2).sync()

        assert report.get("a").kind == "cancelled"
        # Let the abandoned worker run to completion
        time.sleep(1.5)
        assert git("rev-parse", "main", cwd=bare_a) == remote_head


@pytest.mark.integration
class TestForEach:
    """Tests for foreach."""

    def test_runs_in_each_work_tree(self, plain_registry: RepositoryRegistry) -> None:
        report = BatchOrchestrator(plain_registry).execute(ForEachCommand(command="pwd"))

        assert not report.failed
        for outcome in report.outcomes:
            assert Path(outcome.result.stdout.strip()) == outcome.path.resolve()

    def test_non_zero_exit_fails_target(self, plain_registry: RepositoryRegistry) -> None:
        report = BatchOrchestrator(plain_registry).foreach('test "$(basename "$PWD")" != b')

        assert report.get("a").success
        assert report.get("b").kind == "command"
        assert report.get("b").result.exit_code == 1
        assert report.get("c").success

    @pytest.mark.parametrize("sequential", [False, True])
    def test_timeout_cancels_batch(
        self, plain_registry: RepositoryRegistry, sequential: bool
    ) -> None:
        orchestrator = BatchOrchestrator(plain_registry, sequential=sequential, timeout=0.3)

        report = orchestrator.foreach("sleep 2")

        assert len(report.outcomes) == 3
        assert all(o.kind == "cancelled" for o in report.outcomes)
