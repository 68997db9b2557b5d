"""External command invocation for Sitepipe.

The site generator and the diagram renderer are opaque subprocesses. This
module wraps them behind the SiteGenerator and RenderService protocols.

Key items:
- run_command: Blocking subprocess call that raises SubprocessFailed.
- JekyllGenerator: Runs the configured generator command.
- CommandRenderService: Pipes bytes through an external command.
- find_executable: Locates an optional tool on PATH or in the project.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from .config import BuildEnv
from .errors import SubprocessFailed

logger = logging.getLogger(__name__)

# Searched under the project root when a tool is not on PATH.
PROJECT_TOOL_DIRS = ("node_modules/.bin", "bin")


def run_command(
    cmd: Sequence[str],
    *,
    input: bytes | None = None,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
    timeout: float | None = None,
    error_cls: type[SubprocessFailed] = SubprocessFailed,
) -> bytes:
    """Run a command to completion and return its stdout.

    Args:
        cmd: Command and arguments.
        input: Optional bytes written to stdin.
        env: Extra environment variables layered over the current environment.
        cwd: Working directory.
        timeout: Seconds before the command is killed; None waits forever.
        error_cls: Exception type raised on failure.

    Returns:
        Captured stdout bytes.

    Raises:
        SubprocessFailed: If the command is missing, exits non-zero, or times out.
    """
    full_env = None
    if env:
        full_env = os.environ.copy()
        full_env.update(env)
    logger.debug("Running %s", " ".join(cmd))
    try:
        result = subprocess.run(
            list(cmd),
            input=input,
            env=full_env,
            cwd=cwd,
            timeout=timeout,
            capture_output=True,
        )
    except FileNotFoundError as exc:
        raise error_cls(cmd, 127, str(exc)) from exc
    except subprocess.TimeoutExpired as exc:
        raise error_cls(cmd, None, _decode(exc.stderr or exc.stdout)) from exc
    if result.returncode != 0:
        output = _decode(result.stderr) or _decode(result.stdout)
        raise error_cls(cmd, result.returncode, output)
    return result.stdout


def find_executable(name: str, project_root: Path | None = None) -> str | None:
    """Return the path of an optional tool such as svgo or eslint, or None.

    PATH wins; a project-local install (npm or Bundler binstubs) is the fallback.
    """
    on_path = shutil.which(name)
    if on_path or project_root is None:
        return on_path
    candidates = (project_root / tool_dir / name for tool_dir in PROJECT_TOOL_DIRS)
    return next((str(c) for c in candidates if c.is_file()), None)


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, str):
        return data.strip()
    return data.decode("utf-8", errors="replace").strip()


class JekyllGenerator:
    """Runs the external site generator.

    The command is a template; ``{destination}`` is replaced with the output
    directory. The build mode is passed through an environment variable.

    Attributes:
        project_root: Directory the generator runs in.
        command: Command template.
        env_var: Name of the environment variable carrying the build mode.
        timeout: Optional timeout in seconds.
    """

    def __init__(
        self,
        project_root: Path,
        command: Sequence[str],
        env_var: str = "JEKYLL_ENV",
        timeout: float | None = None,
        runner=run_command,
    ):
        self.project_root = project_root
        self.command = list(command)
        self.env_var = env_var
        self.timeout = timeout
        self._runner = runner

    @classmethod
    def from_config(cls, project_root: Path, config: dict[str, Any]) -> JekyllGenerator:
        settings = config.get("generator", {})
        return cls(
            project_root,
            settings.get("command", []),
            env_var=settings.get("env_var", "JEKYLL_ENV"),
            timeout=settings.get("timeout"),
        )

    def build_command(self, destination: Path) -> list[str]:
        return [part.replace("{destination}", str(destination)) for part in self.command]

    def generate(self, env: BuildEnv, destination: Path) -> None:
        cmd = self.build_command(destination)
        logger.info("Generating site (%s) into %s", env.value, destination)
        self._runner(
            cmd,
            env={self.env_var: env.value},
            cwd=self.project_root,
            timeout=self.timeout,
        )


class CommandRenderService:
    """Renders bytes by piping them through an external command."""

    def __init__(self, command: Sequence[str], runner=run_command):
        self.command = list(command)
        self._runner = runner

    def render(self, source: bytes) -> bytes:
        return self._runner(self.command, input=source)
