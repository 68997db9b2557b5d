"""Command-line interface for Sitepipe.

This module defines the pipeline tasks using the Click framework.
Running ``sitepipe`` without a task starts the development server.

Commands:
- build: Run the full pipeline.
- rebuild: Clean, then build.
- serve: Build, serve over HTTPS, and rebuild on changes.
- serve-clean: Clean, then serve.
- lint: Generate the site and run every linter over it.
- deploy: Clean, build and publish (production only).
- clean: Remove the output of the selected environment.
"""

from __future__ import annotations

import contextlib
import logging
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click

from . import __version__
from .config import BuildEnv, BuildPaths, load_config
from .errors import ConfigurationError, PipelineError
from .lint import Linter, default_checkers
from .pipeline import BuildPipeline, BuildResult
from .publish import GitPublisher, ensure_publishable
from .server import ServerSettings, ServerSlot
from .watcher import Watcher

logger = logging.getLogger(__name__)


@dataclass
class TaskContext:
    """State shared by all tasks of one invocation.

    Attributes:
        project_root: Root directory of the project.
        env: Build environment, fixed for the invocation.
    """

    project_root: Path
    env: BuildEnv
    _config: dict[str, Any] | None = field(default=None, repr=False)

    @property
    def config(self) -> dict[str, Any]:
        if self._config is None:
            self._config = load_config(self.project_root)
        return self._config

    @property
    def paths(self) -> BuildPaths:
        return BuildPaths.for_env(self.project_root, self.config, self.env)

    def pipeline(self) -> BuildPipeline:
        return BuildPipeline(self.project_root, self.env, self.config)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@contextlib.contextmanager
def _reporting(title: str) -> Iterator[None]:
    """Turn pipeline errors into a red error block and exit status 1."""
    try:
        yield
    except PipelineError as exc:
        click.echo(click.style(f"{title}:", fg="red", bold=True), err=True)
        for line in str(exc).splitlines():
            click.echo(click.style(f"  {line}", fg="white"), err=True)
        raise SystemExit(1) from None


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="sitepipe")
@click.option(
    "--env",
    "env_name",
    default=BuildEnv.DEVELOPMENT.value,
    envvar="SITEPIPE_ENV",
    show_default=True,
    help="Build environment (development or production)",
)
@click.option(
    "--project",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    help="Project root directory",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, env_name: str, project: Path, verbose: bool):
    """Sitepipe static site build pipeline."""
    _configure_logging(verbose)
    try:
        env = BuildEnv.parse(env_name)
    except ConfigurationError as exc:
        raise click.BadParameter(str(exc), param_hint="--env") from None
    ctx.obj = TaskContext(project_root=project.resolve(), env=env)
    if ctx.invoked_subcommand is None:
        ctx.invoke(serve)


def _build(task: TaskContext, clean: bool = False) -> BuildResult:
    pipeline = task.pipeline()
    if clean:
        pipeline.clean()
    result = pipeline.run()
    for report in result.reports:
        click.echo(f"  {report.summary()}")
    click.echo(f"Built {task.env.value} site into {result.paths.serve}")
    return result


@cli.command()
@click.pass_obj
def build(task: TaskContext):
    """Run the full build pipeline."""
    with _reporting("Build failed"):
        _build(task)


@cli.command()
@click.pass_obj
def rebuild(task: TaskContext):
    """Clean the output, then build."""
    with _reporting("Build failed"):
        _build(task, clean=True)


@cli.command()
@click.pass_obj
def clean(task: TaskContext):
    """Remove the output of the selected environment."""
    with _reporting("Clean failed"):
        task.pipeline().clean()
    click.echo(f"Cleaned {task.paths.root}")


def _serve(task: TaskContext, clean_first: bool, port: int | None, ws_port: int | None) -> None:
    with _reporting("Serve failed"):
        pipeline = task.pipeline()
        if clean_first:
            pipeline.clean()
        pipeline.run()
        settings = ServerSettings.from_config(task.project_root, task.config, port, ws_port)
        slot = ServerSlot()
        handle = slot.start(pipeline.paths.serve, settings)
    watch = task.config.get("watch", {})
    watcher = Watcher(
        [task.project_root / p for p in watch.get("paths", ["."])],
        rebuild=pipeline.run,
        reload=handle.reload,
        ignored_dirs=[pipeline.paths.root.parent],
        ignored_names=watch.get("ignore", []),
    )
    watcher.start()
    click.echo(f"Serving at https://{settings.host}:{settings.port} (Ctrl+C to stop)")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        watcher.stop()
        slot.stop()


@cli.command()
@click.option("--port", type=int, required=False, help="HTTPS port (overrides sitepipe.yaml)")
@click.option("--ws-port", type=int, required=False, help="Live reload websocket port")
@click.pass_obj
def serve(task: TaskContext, port: int | None = None, ws_port: int | None = None):
    """Build, serve over HTTPS and rebuild on changes."""
    _serve(task, False, port, ws_port)


@cli.command("serve-clean")
@click.option("--port", type=int, required=False, help="HTTPS port (overrides sitepipe.yaml)")
@click.option("--ws-port", type=int, required=False, help="Live reload websocket port")
@click.pass_obj
def serve_clean(task: TaskContext, port: int | None, ws_port: int | None):
    """Clean the output, then serve."""
    _serve(task, True, port, ws_port)


@cli.command()
@click.pass_obj
def lint(task: TaskContext):
    """Generate the site and run every linter over the output."""
    with _reporting("Lint failed"):
        pipeline = task.pipeline()
        pipeline.generate()
        pipeline.render_diagrams()
        report = Linter(default_checkers(task.project_root)).run(pipeline.paths.generated)
    for issue in report.issues:
        color = "red" if issue in report.errors else "yellow"
        click.echo(click.style(issue.format(), fg=color))
    click.echo(
        f"{len(report.errors)} error(s), {len(report.warnings)} warning(s)"
        + (f"; skipped: {', '.join(report.skipped)}" if report.skipped else "")
    )
    if report.errors and task.config.get("lint", {}).get("fail_on_error", True):
        raise SystemExit(1)


@cli.command()
@click.pass_obj
def deploy(task: TaskContext):
    """Clean, build and publish the site (production only)."""
    with _reporting("Deploy failed"):
        publisher = GitPublisher.from_config(task.config)
        ensure_publishable(task.env, publisher.remote)
        result = _build(task, clean=True)
        publisher.publish(result.paths.serve, task.env)
    click.echo(f"Published to {publisher.remote} ({publisher.branch})")


def main():
    """Entry point for the CLI application."""
    cli()
