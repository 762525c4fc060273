"""Credential resolution for network git operations.

libgit2 asks for credentials through a callback while a clone, fetch or push
is in progress. ``CredentialResolver`` answers one such challenge;
``RemoteCallbacks`` wires it into pygit2 for a single operation.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time

import pygit2
from pygit2.enums import CredentialType

from .errors import AuthenticationError, OperationCancelledError

logger = logging.getLogger(__name__)

DEFAULT_SSH_USERNAME = "git"

# libgit2 keeps challenging as long as the callback hands out credentials
MAX_CHALLENGES = 5


def describe_methods(allowed_types: int) -> str:
    """Human readable list of the methods in a ``CredentialType`` bitmask."""
    names = [
        flag.name.lower() for flag in CredentialType if flag.name and flag & allowed_types
    ]
    return ", ".join(names) or "none"


class CancelToken:
    """Cooperative cancellation shared by every target of a batch.

    Cancelled when ``cancel()`` is called or once ``timeout`` seconds have
    elapsed since creation.
    """

    def __init__(self, timeout: float | None = None):
        self._event = threading.Event()
        self.deadline = time.monotonic() + timeout if timeout else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None without a deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelledError()


class CredentialResolver:
    """Produce credentials for a remote URL.

    Strategies are tried in a fixed order: SSH agent, libgit2 default
    credentials, then the configured git credential helper. Nothing is cached
    between challenges.
    """

    def __init__(self, git_binary: str = "git"):
        self.git_binary = git_binary

    def resolve(self, url: str, allowed_types: int, username_hint: str | None = None):
        """Answer one credential challenge.

        Returns a pygit2 credential object, raises ``pygit2.Passthrough`` to let
        libgit2 use its default credentials, or raises ``AuthenticationError``.
        """
        if allowed_types & CredentialType.SSH_KEY:
            username = (
                username_hint or self.helper_username(url) or DEFAULT_SSH_USERNAME
            )
            logger.debug("using ssh agent identity '%s' for %s", username, url)
            return pygit2.KeypairFromAgent(username)

        if allowed_types & CredentialType.DEFAULT:
            logger.debug("using default credentials for %s", url)
            raise pygit2.Passthrough

        if allowed_types & CredentialType.USERPASS_PLAINTEXT:
            username, password = self.helper_credentials(url, username_hint)
            if password is None:
                raise AuthenticationError(
                    f"no credentials available for '{url}' (method: userpass_plaintext)",
                    url=url,
                    method="userpass_plaintext",
                )
            logger.debug("using credential helper for %s", url)
            return pygit2.UserPass(username or "", password)

        method = describe_methods(allowed_types)
        raise AuthenticationError(
            f"authentication '{method}' is not supported for '{url}'",
            url=url,
            method=method,
        )

    def _git(self, args: list[str], input_text: str | None = None) -> subprocess.CompletedProcess:
        env = dict(os.environ, GIT_TERMINAL_PROMPT="0")
        return subprocess.run(
            [self.git_binary, *args],
            input=input_text,
            capture_output=True,
            text=True,
            check=False,
            env=env,
        )

    def helper_username(self, url: str) -> str | None:
        """Username configured for ``url`` through ``credential.*.username``."""
        try:
            result = self._git(["config", "--get-urlmatch", "credential.username", url])
        except OSError:
            return None
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip()
        return None

    def helper_credentials(
        self, url: str, username: str | None = None
    ) -> tuple[str | None, str | None]:
        """Ask ``git credential fill`` for a username and password."""
        request = f"url={url}\n"
        if username:
            request += f"username={username}\n"
        request += "\n"

        try:
            result = self._git(["credential", "fill"], input_text=request)
        except OSError as e:
            logger.debug("credential helper unavailable: %s", e)
            return username, None
        if result.returncode != 0:
            logger.debug("credential helper failed: %s", result.stderr.strip())
            return username, None

        values = {}
        for line in result.stdout.splitlines():
            key, sep, value = line.partition("=")
            if sep:
                values[key] = value
        return values.get("username", username), values.get("password")


class RemoteCallbacks(pygit2.RemoteCallbacks):
    """pygit2 callbacks for one clone, fetch or push."""

    def __init__(self, resolver: CredentialResolver, token: CancelToken | None = None):
        super().__init__()
        self.resolver = resolver
        self.token = token
        self.challenges = 0
        self.rejected_refs: dict[str, str] = {}

    def credentials(self, url, username_from_url, allowed_types):
        self.challenges += 1
        if self.challenges > MAX_CHALLENGES:
            method = describe_methods(allowed_types)
            raise AuthenticationError(
                f"credentials for '{url}' were rejected (method: {method})",
                url=url,
                method=method,
            )
        return self.resolver.resolve(url, allowed_types, username_from_url)

    def transfer_progress(self, stats):
        if self.token is not None:
            self.token.raise_if_cancelled()

    def push_transfer_progress(self, objects_pushed, total_objects, bytes_pushed):
        if self.token is not None:
            self.token.raise_if_cancelled()

    def push_update_reference(self, refname, message):
        if message:
            self.rejected_refs[refname] = message
