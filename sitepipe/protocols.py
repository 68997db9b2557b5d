"""Protocol definitions for Sitepipe.

This module defines the collaborator interfaces the orchestrator depends on.
Every external tool (the site generator, the diagram renderer, the publisher)
is reached through one of these protocols, so the pipeline can be exercised
with in-process fakes.
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .config import BuildEnv

# A transform is a pure function from file content to file content.
Transform = Callable[[bytes], bytes]


@runtime_checkable
class SiteGenerator(Protocol):
    """Protocol for the external site generator.

    Implementations produce a directory tree of generated pages and assets.
    """

    @abstractmethod
    def generate(self, env: BuildEnv, destination: Path) -> None:
        """Generate the site into ``destination``.

        Args:
            env: Build mode communicated to the generator.
            destination: Directory that receives the generated tree.

        Raises:
            SubprocessFailed: If the generator fails.
        """
        ...


@runtime_checkable
class RenderService(Protocol):
    """Protocol for an external render service: bytes in, bytes out."""

    @abstractmethod
    def render(self, source: bytes) -> bytes:
        """Render source bytes.

        Args:
            source: Raw input (e.g., Graphviz source).

        Returns:
            Rendered output bytes.

        Raises:
            SubprocessFailed: If rendering fails.
        """
        ...


@runtime_checkable
class Publisher(Protocol):
    """Protocol for pushing a finished site to its hosting location."""

    @abstractmethod
    def publish(self, serve_dir: Path, env: BuildEnv) -> None:
        """Publish the contents of ``serve_dir``.

        Args:
            serve_dir: Final, revisioned site directory.
            env: Build mode; implementations refuse non-production modes.
        """
        ...


@runtime_checkable
class Checker(Protocol):
    """Protocol for a lint checker."""

    name: str

    @abstractmethod
    def check(self, root: Path, rel_paths: list[str]) -> list:
        """Check files below ``root``.

        Args:
            root: Directory the relative paths are rooted at.
            rel_paths: All files under ``root``; checkers select their own.

        Returns:
            List of LintIssue objects.
        """
        ...
