"""Asset transform stages for Sitepipe.

A stage selects files from its input directory by glob pattern, runs them
through an ordered chain of transforms, writes the results to its output
directory under the same relative paths, and reports the size change.

Key classes:
- Stage: Generic glob-select, transform, write stage.
- CopyStage: Fallback stage that copies everything the other stages skip,
  optimising raster images on the way.
- StageReport: Size-before/after metric of one stage run.
- create_default_stages: Build the standard stage set for a build.

Enforcing stages raise StageError on the first bad file. Advisory stages log
the problem and pass the original bytes through.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import StageCancelled, StageError, TransformError
from .external import CommandRenderService, find_executable
from .html_utils import make_svg_inliner
from .protocols import Transform
from .transforms import (
    check_json,
    check_xml,
    compose,
    make_svg_optimizer,
    minify_css,
    minify_html,
    minify_js,
    minify_json,
    minify_xml,
    optimize_image,
)
from .utils import format_size, iter_files, matches_any

logger = logging.getLogger(__name__)

# An ordered sequence of (relative path, content) pairs.
FileSet = list[tuple[str, bytes]]

IMAGE_PATTERNS = ("*.png", "*.jpg", "*.jpeg", "*.gif")
JSON_PATTERNS = ("*.json", "*.webmanifest")

DEFAULT_PATTERNS: dict[str, tuple[str, ...]] = {
    "minify-xml-json": ("*.xml", "*.json", "*.webmanifest"),
    "minify-css": ("*.css",),
    "minify-js": ("*.js",),
    "optimize-svg": ("*.svg",),
    "minify-html": ("*.html", "*.htm"),
}


@dataclass
class StageReport:
    """Result of running one stage.

    Attributes:
        name: Stage name.
        files: Number of files written.
        bytes_before: Total input size.
        bytes_after: Total output size.
        outputs: Relative paths written, in order.
    """

    name: str
    files: int = 0
    bytes_before: int = 0
    bytes_after: int = 0
    outputs: list[str] = field(default_factory=list)

    @property
    def saved(self) -> int:
        return self.bytes_before - self.bytes_after

    def summary(self) -> str:
        return (
            f"{self.name}: {self.files} files, "
            f"{format_size(self.bytes_before)} -> {format_size(self.bytes_after)}"
        )


def read_file_set(root: Path, rel_paths: Iterable[str]) -> FileSet:
    """Read the given relative paths below ``root`` into a file set."""
    return [(rel, (root / rel).read_bytes()) for rel in rel_paths]


def write_file_set(root: Path, files: FileSet) -> None:
    """Write a file set below ``root``, creating directories as needed."""
    for rel, data in files:
        dest = root / rel
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)


class Stage:
    """A pipeline step transforming one file set into another.

    Attributes:
        name: Stage name used in logs and errors.
        patterns: Glob patterns selecting input files.
        exclude: Glob patterns removed from the selection.
        transforms: Ordered transforms applied to each file.
        routes: Optional (patterns, transforms) pairs; the first route whose
            patterns match a file replaces the default transforms for it.
        advisory: If True, transform failures are logged instead of raised.
    """

    def __init__(
        self,
        name: str,
        patterns: Sequence[str],
        transforms: Sequence[Transform] = (),
        exclude: Sequence[str] = (),
        advisory: bool = False,
        routes: Sequence[tuple[Sequence[str], Sequence[Transform]]] = (),
    ):
        self.name = name
        self.patterns = tuple(patterns)
        self.exclude = tuple(exclude)
        self.transforms = list(transforms)
        self.routes = [(tuple(p), list(t)) for p, t in routes]
        self.advisory = advisory

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"

    def select(self, rel_paths: Iterable[str]) -> list[str]:
        return [
            rel
            for rel in rel_paths
            if matches_any(rel, self.patterns) and not matches_any(rel, self.exclude)
        ]

    def transforms_for(self, rel_path: str) -> list[Transform]:
        """Return the transforms to apply to ``rel_path``."""
        for route_patterns, route_transforms in self.routes:
            if matches_any(rel_path, route_patterns):
                return route_transforms
        return self.transforms

    def apply(self, rel_path: str, data: bytes) -> bytes:
        """Run the transform chain on one file.

        Raises:
            StageError: If a transform fails and the stage is enforcing.
        """
        try:
            return compose(self.transforms_for(rel_path))(data)
        except TransformError as exc:
            if not self.advisory:
                raise StageError(self.name, rel_path, str(exc)) from exc
            logger.warning("[%s] %s: %s (kept unchanged)", self.name, rel_path, exc)
            return data

    def transform(self, files: FileSet, cancel: threading.Event | None = None) -> FileSet:
        """Map a file set through the stage without touching the filesystem."""
        result: FileSet = []
        for rel, data in files:
            if cancel is not None and cancel.is_set():
                raise StageCancelled(f"{self.name} cancelled")
            result.append((rel, self.apply(rel, data)))
        return result

    def run(
        self,
        input_dir: Path,
        output_dir: Path,
        cancel: threading.Event | None = None,
    ) -> StageReport:
        """Process the selected files of ``input_dir`` into ``output_dir``.

        Args:
            input_dir: Snapshot to read from.
            output_dir: Directory to write to.
            cancel: Event set when a sibling stage has failed.

        Returns:
            StageReport with the size metric.
        """
        selected = self.select(iter_files(input_dir))
        report = StageReport(self.name)
        for rel, data in read_file_set(input_dir, selected):
            if cancel is not None and cancel.is_set():
                raise StageCancelled(f"{self.name} cancelled")
            output = self.apply(rel, data)
            write_file_set(output_dir, [(rel, output)])
            report.files += 1
            report.bytes_before += len(data)
            report.bytes_after += len(output)
            report.outputs.append(rel)
        logger.info(report.summary())
        return report


class CopyStage(Stage):
    """Copies every file no other stage claims.

    Raster images are optimised when ``optimize_images`` is set; all other
    files are written unchanged.
    """

    def __init__(self, name: str, exclude: Sequence[str], optimize_images: bool = True):
        routes = [(IMAGE_PATTERNS, [optimize_image])] if optimize_images else []
        super().__init__(name, ("*",), exclude=exclude, routes=routes)
        self.optimize_images = optimize_images

    def transforms_for(self, rel_path: str) -> list[Transform]:
        # image suffixes are matched case-insensitively
        return super().transforms_for(rel_path.lower())


@dataclass
class StageSet:
    """The stages of one build.

    Attributes:
        parallel: Independent stages run concurrently on the generator output.
        html: HTML stage run after all parallel stages finished.
    """

    parallel: list[Stage]
    html: Stage


def create_default_stages(
    project_root: Path,
    config: dict[str, Any],
    flags: dict[str, Any],
    build_dir: Path,
) -> StageSet:
    """Create the standard stage set.

    Args:
        project_root: Root directory of the project (for tool lookup).
        config: Loaded configuration.
        flags: Feature flags of the build environment.
        build_dir: Directory the parallel stages write to; the HTML stage
            reads inlined SVGs from it.

    Returns:
        Configured StageSet.
    """
    minify = bool(flags.get("minify"))
    overrides = config.get("stages") or {}

    def patterns(name: str) -> tuple[str, ...]:
        return tuple(overrides.get(name, {}).get("patterns", DEFAULT_PATTERNS[name]))

    def advisory(name: str) -> bool:
        return bool(overrides.get(name, {}).get("advisory", False))

    svgo = find_executable("svgo", project_root) if minify else None
    svg_service = CommandRenderService([svgo, "--input", "-", "--output", "-"]) if svgo else None
    if minify and svgo is None:
        logger.info("svgo not found; falling back to basic SVG whitespace stripping.")

    parallel = [
        Stage(
            "minify-xml-json",
            patterns("minify-xml-json"),
            [minify_xml] if minify else [check_xml],
            advisory=advisory("minify-xml-json"),
            routes=[(JSON_PATTERNS, [minify_json] if minify else [check_json])],
        ),
        Stage(
            "minify-css",
            patterns("minify-css"),
            [minify_css] if minify else [],
            advisory=advisory("minify-css"),
        ),
        Stage(
            "minify-js",
            patterns("minify-js"),
            [minify_js] if minify else [],
            advisory=advisory("minify-js"),
        ),
        Stage(
            "optimize-svg",
            patterns("optimize-svg"),
            [make_svg_optimizer(svg_service)] if minify else [check_xml],
            advisory=advisory("optimize-svg"),
        ),
    ]
    claimed: list[str] = []
    for name in DEFAULT_PATTERNS:
        claimed.extend(patterns(name))
    claimed.extend(config.get("diagrams", {}).get("patterns", []))
    parallel.append(CopyStage("copy-misc", exclude=claimed, optimize_images=minify))

    html_transforms: list[Transform] = [make_svg_inliner(build_dir)]
    if minify:
        html_transforms.append(minify_html)
    html = Stage(
        "minify-html",
        patterns("minify-html"),
        html_transforms,
        advisory=advisory("minify-html"),
    )
    return StageSet(parallel=parallel, html=html)

