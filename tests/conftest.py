"""
Shared pytest fixtures for git-repo tests.

Remote repositories are bare repositories under ``tmp_path``; every test runs
with an isolated HOME and current directory.
"""

import subprocess
from pathlib import Path

import pytest

from git_repo.registry import Repository, RepositoryRegistry


def git(*args: str, cwd: Path) -> str:
    """Run a git command and return its stripped stdout."""
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def commit_file(repo: Path, filename: str, content: str, message: str | None = None) -> str:
    """Write ``filename`` in ``repo`` and commit it, returning the commit id."""
    (repo / filename).write_text(content)
    git("add", filename, cwd=repo)
    git("commit", "-m", message or f"Update {filename}", cwd=repo)
    return git("rev-parse", "HEAD", cwd=repo)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate git configuration and the working directory."""
    home = tmp_path / "home"
    home.mkdir()
    work = tmp_path / "work"
    work.mkdir()

    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@test.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@test.com")
    monkeypatch.delenv("GIT_REPO_CONFIG", raising=False)
    monkeypatch.chdir(work)
    return work


@pytest.fixture
def make_remote(tmp_path: Path):
    """Factory creating a bare remote with one commit on ``main``.

    Returns ``(bare_path, seed_path)``; ``seed_path`` is a working clone that
    can push new commits to the remote.
    """
    remotes = tmp_path / "remotes"
    seeds = tmp_path / "seeds"
    remotes.mkdir(exist_ok=True)
    seeds.mkdir(exist_ok=True)

    def _make(name: str) -> tuple[Path, Path]:
        bare = remotes / f"{name}.git"
        subprocess.run(
            ["git", "init", "--bare", "-b", "main", str(bare)],
            capture_output=True,
            check=True,
        )
        seed = seeds / name
        subprocess.run(
            ["git", "clone", str(bare), str(seed)], capture_output=True, check=True
        )
        git("checkout", "-B", "main", cwd=seed)
        commit_file(seed, "README.md", f"# {name}\n", "Initial commit")
        git("push", "-u", "origin", "main", cwd=seed)
        return bare, seed

    return _make


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "config" / "config.toml"


@pytest.fixture
def registry(config_path: Path) -> RepositoryRegistry:
    return RepositoryRegistry(config_path)


@pytest.fixture
def plain_registry(tmp_path: Path, config_path: Path) -> RepositoryRegistry:
    """Registry of three plain directories named a, b and c."""
    repos = []
    for name in ("a", "b", "c"):
        path = tmp_path / "plain" / name
        path.mkdir(parents=True)
        repos.append(Repository(name=name, path=path))
    return RepositoryRegistry(config_path, repos)
