"""Repository registry and its TOML document.

The registry maps a repository name to the local clone it manages. Both the
name and the canonical clone path are unique. The whole document is loaded
once per invocation and written back wholesale.
"""

from __future__ import annotations

import logging
import os
import tempfile
import tomllib
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import toml

from .errors import ConfigurationError, NameConflictError, PathConflictError

logger = logging.getLogger(__name__)

APP_NAME = "git-repo"
CONFIG_FILENAME = "config.toml"
LOCAL_CONFIG_FILENAME = ".git-repo.toml"
CONFIG_ENV_VAR = "GIT_REPO_CONFIG"
SAVE_PATH_KEY = "path"


@dataclass(frozen=True)
class Repository:
    """A registered repository."""

    name: str
    path: Path
    origin: str | None = None

    def to_dict(self) -> dict:
        data: dict[str, str] = {"path": str(self.path)}
        if self.origin:
            data["origin"] = self.origin
        return data


def canonical_path(path: Path) -> Path:
    """Resolve ``path`` to an absolute path with symlinks removed.

    The path does not need to exist.
    """
    return Path(os.path.expanduser(path)).resolve()


class RepositoryRegistry:
    """In-memory registry of repositories, saved to ``path``."""

    def __init__(
        self,
        path: Path,
        repositories: list[Repository] | None = None,
        settings: dict | None = None,
    ):
        self.path = path
        # Other top-level document keys; the save ``path`` is not written back
        self.settings = dict(settings or {})
        self._repositories: dict[str, Repository] = {}
        for repo in repositories or []:
            self.insert(repo)

    def __contains__(self, name: object) -> bool:
        return name in self._repositories

    def __iter__(self) -> Iterator[Repository]:
        return iter(self._repositories.values())

    def __len__(self) -> int:
        return len(self._repositories)

    def contains(self, name: str) -> bool:
        return name in self._repositories

    def get(self, name: str) -> Repository | None:
        return self._repositories.get(name)

    def names(self) -> list[str]:
        return sorted(self._repositories)

    def find_by_path(self, path: Path) -> Repository | None:
        """Find the repository registered at the canonical form of ``path``."""
        target = canonical_path(path)
        for repo in self._repositories.values():
            if canonical_path(repo.path) == target:
                return repo
        return None

    def check_available(self, name: str, path: Path) -> None:
        """Raise if ``name`` or ``path`` is already registered.

        The name is checked before the path.
        """
        if name in self._repositories:
            raise NameConflictError(name)
        owner = self.find_by_path(path)
        if owner is not None:
            raise PathConflictError(canonical_path(path), owner.name)

    def insert(self, repo: Repository) -> None:
        """Register ``repo``; a conflicting insert leaves the registry untouched."""
        self.check_available(repo.name, repo.path)
        self._repositories[repo.name] = repo
        logger.debug("registered '%s' at %s", repo.name, repo.path)

    def remove(self, name: str) -> Repository | None:
        """Drop ``name`` and return its entry, or None if it was not registered."""
        return self._repositories.pop(name, None)

    # -------------------------------------------------------------------------
    # Document conversion
    # -------------------------------------------------------------------------

    def to_document(self) -> dict:
        """Serialize to the document layout, repositories sorted by name.

        The save location (``path``) is read from the document but not written.
        """
        document = {k: v for k, v in self.settings.items() if k != SAVE_PATH_KEY}
        document["repositories"] = {
            name: self._repositories[name].to_dict() for name in self.names()
        }
        return document

    @classmethod
    def from_document(cls, document: dict, path: Path) -> RepositoryRegistry:
        repositories = document.get("repositories", {})
        if not isinstance(repositories, dict):
            raise ConfigurationError("'repositories' must be a table", path)

        entries = []
        for name, value in repositories.items():
            if not isinstance(value, dict) or not isinstance(value.get("path"), str):
                raise ConfigurationError(
                    f"repository '{name}' must be a table with a 'path' string", path
                )
            origin = value.get("origin")
            if origin is not None and not isinstance(origin, str):
                raise ConfigurationError(f"origin of repository '{name}' must be a string", path)
            entries.append(Repository(name=name, path=Path(value["path"]), origin=origin))

        settings = {k: v for k, v in document.items() if k != "repositories"}
        try:
            return cls(path, entries, settings)
        except (NameConflictError, PathConflictError) as e:
            raise ConfigurationError(f"invalid registry: {e}", path) from e

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def persist(self) -> None:
        """Write the whole document to ``self.path`` atomically.

        The document is written to a temporary file next to the destination
        and renamed over it, so readers never see a partial file.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                f"failed to create directory: {e.strerror or e}", self.path.parent
            ) from e

        content = toml.dumps(self.to_document())

        try:
            fd, temp_path = tempfile.mkstemp(
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
            )
        except OSError as e:
            raise ConfigurationError(f"failed to create file: {e.strerror or e}", self.path) from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
        except OSError as e:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise ConfigurationError(f"failed to write file: {e.strerror or e}", self.path) from e

        logger.info("registry saved to %s", self.path)


# =============================================================================
# Loading
# =============================================================================


def system_config_path() -> Path:
    return Path("/etc") / APP_NAME / CONFIG_FILENAME


def user_config_path() -> Path:
    """User registry path, honouring ``$XDG_CONFIG_HOME``."""
    config_home = os.environ.get("XDG_CONFIG_HOME")
    base = Path(config_home) if config_home else Path.home() / ".config"
    return base / APP_NAME / CONFIG_FILENAME


def local_config_path() -> Path:
    return Path.cwd() / LOCAL_CONFIG_FILENAME


def default_search_paths() -> list[Path]:
    """Layered configuration files, lowest precedence first."""
    return [system_config_path(), user_config_path(), local_config_path()]


def read_document(path: Path) -> dict:
    """Parse one TOML document."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"malformed configuration: {e}", path) from e
    except OSError as e:
        raise ConfigurationError(f"failed to read configuration: {e.strerror or e}", path) from e


def merge_documents(layers: list[dict]) -> dict:
    """Merge documents, later layers taking precedence.

    Scalars are replaced; ``repositories`` tables are merged by name with a
    later entry replacing an earlier one of the same name.
    """
    merged: dict[str, Any] = {}
    repositories: dict[str, Any] = {}
    for layer in layers:
        for key, value in layer.items():
            if key == "repositories" and isinstance(value, dict):
                repositories.update(value)
            else:
                merged[key] = value
    if repositories:
        merged["repositories"] = repositories
    return merged


def load_registry(
    config_path: Path | None = None,
    search_paths: list[Path] | None = None,
) -> RepositoryRegistry:
    """Load the registry.

    An explicit ``config_path`` must exist and is also where the registry is
    saved. Without one, every existing file in ``search_paths`` (default:
    system, user, current directory) is merged; the registry is then saved to
    the merged ``path`` value, or to the user configuration file.
    """
    if config_path is not None:
        path = Path(os.path.expanduser(config_path))
        if not path.is_file():
            raise ConfigurationError("configuration file does not exist", path)
        logger.debug("loading registry from %s", path)
        return RepositoryRegistry.from_document(read_document(path), path)

    if search_paths is None:
        search_paths = default_search_paths()

    layers = []
    for candidate in search_paths:
        if candidate.is_file():
            logger.debug("loading configuration layer %s", candidate)
            layers.append(read_document(candidate))

    document = merge_documents(layers)
    save_path = document.get(SAVE_PATH_KEY)
    if save_path is not None and not isinstance(save_path, str):
        raise ConfigurationError("'path' must be a string")
    path = Path(os.path.expanduser(save_path)) if save_path else user_config_path()
    return RepositoryRegistry.from_document(document, path)
