"""Build pipeline orchestration for Sitepipe.

This module wires the pipeline steps together:

    generate -> render-diagrams
             -> (minify-xml-json | minify-css | minify-js | optimize-svg | copy-misc)
             -> minify-html -> revision

The five middle stages run concurrently against the same immutable generator
snapshot and write disjoint paths. They are joined at a barrier before the
HTML stage. The first failing stage cancels its siblings and its error is
re-raised; nothing is retried.

Key classes:
- BuildPipeline: Runs the pipeline for one environment.
- BuildResult: Reports, reference map and paths of a finished build.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import BuildEnv, BuildPaths, env_flags, load_config
from .diagrams import DiagramRenderer
from .errors import StageCancelled
from .external import JekyllGenerator
from .protocols import SiteGenerator
from .revision import Revisioner, RevisionResult
from .stages import Stage, StageReport, StageSet, create_default_stages
from .utils import ensure_clean_dir, remove_dir, swap_dir

logger = logging.getLogger(__name__)


@dataclass
class BuildResult:
    """Result of a pipeline run.

    Attributes:
        env: Build environment.
        paths: Snapshot directories of the build.
        reports: Stage reports, parallel stages first, in stage order.
        revision: Reference map of the revisioning pass.
    """

    env: BuildEnv
    paths: BuildPaths
    reports: list[StageReport] = field(default_factory=list)
    revision: RevisionResult | None = None


def run_parallel(
    stages: list[Stage],
    input_dir: Path,
    output_dir: Path,
    max_workers: int | None = None,
    cancel: threading.Event | None = None,
) -> list[StageReport]:
    """Run independent stages concurrently and join them at a barrier.

    Every stage gets an explicit future. When one fails, the shared cancel
    event is set so running siblings stop before their next file, queued
    siblings are cancelled, and the first failure is re-raised.

    Args:
        stages: Stages with disjoint outputs.
        input_dir: Snapshot all stages read from.
        output_dir: Directory all stages write to.
        max_workers: Thread pool size (defaults to one per stage).
        cancel: Cancellation event shared with the stages (created when omitted).

    Returns:
        Stage reports in the order the stages were given.
    """
    if not stages:
        return []
    if cancel is None:
        cancel = threading.Event()
    with ThreadPoolExecutor(max_workers=max_workers or len(stages)) as executor:
        futures: dict[Future, Stage] = {
            executor.submit(stage.run, input_dir, output_dir, cancel): stage
            for stage in stages
        }
        _, pending = wait(futures, return_when=FIRST_EXCEPTION)
        failed = [f for f in futures if f.done() and not f.cancelled() and f.exception()]
        if failed:
            cancel.set()
            for future in pending:
                future.cancel()
            wait(pending)
            first = _first_failure(failed)
            logger.error("Stage %s failed; cancelled remaining stages", futures[first].name)
            raise first.exception()
    return [future.result() for future in futures]


def _first_failure(failed: list[Future]) -> Future:
    # Prefer a real failure over the cancellations it caused.
    for future in failed:
        if not isinstance(future.exception(), StageCancelled):
            return future
    return failed[0]


class BuildPipeline:
    """Runs the full build for one environment.

    Attributes:
        project_root: Root directory of the project.
        env: Build environment.
        config: Loaded configuration.
        paths: Snapshot directories.
        flags: Feature flags of the environment.
    """

    def __init__(
        self,
        project_root: Path,
        env: BuildEnv = BuildEnv.DEVELOPMENT,
        config: dict[str, Any] | None = None,
        generator: SiteGenerator | None = None,
        diagrams: DiagramRenderer | None = None,
        stages: StageSet | None = None,
        revisioner: Revisioner | None = None,
    ):
        self.project_root = project_root
        self.env = env
        self.config = config if config is not None else load_config(project_root)
        self.paths = BuildPaths.for_env(project_root, self.config, env)
        self.flags = env_flags(self.config, env)
        self.generator = generator or JekyllGenerator.from_config(project_root, self.config)
        self.diagrams = diagrams or DiagramRenderer.from_config(self.config)
        self.stages = stages or create_default_stages(
            project_root, self.config, self.flags, self.paths.build
        )
        self.revisioner = revisioner or Revisioner.from_config(self.config)

    def clean(self) -> None:
        """Remove every snapshot of this environment."""
        if remove_dir(self.paths.root):
            logger.info("Removed %s", self.paths.root)

    def run(self) -> BuildResult:
        """Run every step in order.

        Returns:
            BuildResult of the build.

        Raises:
            PipelineError: On the first failing step.
        """
        result = BuildResult(env=self.env, paths=self.paths)
        self.generate()
        self.render_diagrams()
        result.reports.extend(self.run_asset_stages())
        result.reports.append(self.run_html_stage())
        result.revision = self.revision()
        logger.info("Build (%s) complete: %s", self.env.value, self.paths.serve)
        return result

    def generate(self) -> None:
        ensure_clean_dir(self.paths.generated)
        self.generator.generate(self.env, self.paths.generated)

    def render_diagrams(self) -> list[str]:
        return self.diagrams.render_tree(self.paths.generated)

    def run_asset_stages(self) -> list[StageReport]:
        ensure_clean_dir(self.paths.build)
        return run_parallel(self.stages.parallel, self.paths.generated, self.paths.build)

    def run_html_stage(self) -> StageReport:
        return self.stages.html.run(self.paths.generated, self.paths.build)

    def revision(self) -> RevisionResult:
        """Revision the build snapshot into the serve directory.

        The serve tree is written to a staging directory and swapped in, so a
        running dev server never sees a partial tree.
        """
        staging = self.paths.serve.with_name(self.paths.serve.name + ".staging")
        ensure_clean_dir(staging)
        result = self.revisioner.revision(self.paths.build, staging)
        swap_dir(staging, self.paths.serve)
        manifest_name = self.config.get("revision", {}).get("manifest")
        if manifest_name:
            (self.paths.root / manifest_name).write_text(result.manifest(), encoding="utf-8")
        return result
