"""Error types for Sitepipe.

Every failure the pipeline can surface derives from PipelineError so the CLI
can report it uniformly and exit non-zero. No step retries: errors propagate
to the caller as soon as they happen.

Key classes:
- SubprocessFailed: An external command exited non-zero or timed out.
- StageError: A transform failed on a file of an enforcing stage.
- ConfigurationError: Invalid configuration, raised before any side effect.
- ServerError: The development server could not start.
- PublishError: The git publish step failed.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path


class PipelineError(Exception):
    """Base class for all errors raised by the build pipeline."""


class ConfigurationError(PipelineError):
    """Raised when configuration is invalid or a task is not allowed in this mode."""


class SubprocessFailed(PipelineError):
    """Error raised when an external command fails.

    Attributes:
        command: The command that was run.
        returncode: Exit status, or None when the command timed out.
        output: Captured stderr/stdout of the command, decoded verbatim.
    """

    def __init__(
        self,
        command: Sequence[str],
        returncode: int | None,
        output: str = "",
    ):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        if returncode is None:
            summary = f"Command timed out: {' '.join(self.command)}"
        else:
            summary = f"Command failed with exit code {returncode}: {' '.join(self.command)}"
        if output:
            summary = f"{summary}\n{output}"
        super().__init__(summary)


class PublishError(SubprocessFailed):
    """Raised when a git command of the publish step fails."""


class StageError(PipelineError):
    """Error raised when a stage cannot transform a file.

    Attributes:
        stage: Name of the stage that failed.
        path: Relative path of the offending file.
        message: Human-readable error message.
    """

    def __init__(self, stage: str, path: str, message: str):
        self.stage = stage
        self.path = path
        self.message = message
        super().__init__(f"[{stage}] {path}: {message}")


class TransformError(PipelineError):
    """Raised by a single transform; stages wrap it into a StageError."""


class StageCancelled(PipelineError):
    """Raised inside a stage when a sibling stage failed first."""


class ServerError(PipelineError):
    """Error raised when the development server cannot start.

    Attributes:
        path: The file that was required but could not be read.
    """

    def __init__(self, path: Path, message: str):
        self.path = path
        super().__init__(f"{path}: {message}")
