"""Publishing for Sitepipe.

Pushes the serve directory to a branch of a git remote (e.g. ``gh-pages``).
Publishing is only allowed for production builds; the check happens before
any file or network operation.

Key items:
- ensure_publishable: The production gate.
- GitPublisher: Copies the site into a fresh work tree, commits and force-pushes.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import BuildEnv
from .errors import ConfigurationError, PublishError
from .external import run_command

logger = logging.getLogger(__name__)

COMMITTER = ("sitepipe", "sitepipe@localhost")


def ensure_publishable(env: BuildEnv, remote: str | None = None) -> None:
    """Refuse to publish anything but a production build.

    Args:
        env: Build environment.
        remote: Configured remote URL, checked when given.

    Raises:
        ConfigurationError: If env is not production or no remote is configured.
    """
    if env is not BuildEnv.PRODUCTION:
        raise ConfigurationError(
            f"Refusing to deploy a '{env.value}' build; use --env {BuildEnv.PRODUCTION.value}"
        )
    if remote is not None and not remote.strip():
        raise ConfigurationError("No publish remote configured (publish.remote in sitepipe.yaml)")


def commit_message(now: datetime | None = None) -> str:
    """Build the auto-generated commit message.

    Examples:
        >>> commit_message(datetime(2024, 1, 15, 8, 30, tzinfo=timezone.utc))
        'Update 2024-01-15T08:30:00Z'
    """
    now = now or datetime.now(timezone.utc)
    return f"Update {now.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')}"


class GitPublisher:
    """Publishes a directory to a branch of a git remote.

    Attributes:
        remote: Remote URL.
        branch: Target branch.
        nojekyll: Whether to add a ``.nojekyll`` marker so the host serves
            files verbatim.
    """

    def __init__(self, remote: str, branch: str = "gh-pages", nojekyll: bool = True, runner=run_command):
        self.remote = remote
        self.branch = branch
        self.nojekyll = nojekyll
        self._runner = runner

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> GitPublisher:
        settings = config.get("publish", {})
        return cls(
            settings.get("remote", ""),
            branch=settings.get("branch", "gh-pages"),
            nojekyll=bool(settings.get("nojekyll", True)),
        )

    def _git(self, worktree: Path, *args: str) -> bytes:
        return self._runner(["git", "-C", str(worktree), *args], error_cls=PublishError)

    def publish(self, serve_dir: Path, env: BuildEnv) -> None:
        """Push the contents of ``serve_dir`` to the configured branch.

        Hidden (dot-prefixed) files are included.

        Raises:
            ConfigurationError: Outside production or without a remote.
            PublishError: If a git command fails.
        """
        ensure_publishable(env, self.remote)
        if not serve_dir.is_dir():
            raise ConfigurationError(f"Nothing to publish: {serve_dir} does not exist")
        with tempfile.TemporaryDirectory(prefix="sitepipe-publish-") as tmp:
            worktree = Path(tmp)
            shutil.copytree(serve_dir, worktree, dirs_exist_ok=True)
            if self.nojekyll:
                (worktree / ".nojekyll").touch()
            name, email = COMMITTER
            self._git(worktree, "init", "--quiet")
            self._git(worktree, "checkout", "--quiet", "-b", self.branch)
            self._git(worktree, "add", "--all", "--force")
            self._git(
                worktree,
                "-c",
                f"user.name={name}",
                "-c",
                f"user.email={email}",
                "commit",
                "--quiet",
                "-m",
                commit_message(),
            )
            logger.info("Pushing %s to %s (%s)", serve_dir, self.remote, self.branch)
            self._git(worktree, "push", "--force", self.remote, f"{self.branch}:{self.branch}")
