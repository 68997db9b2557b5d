"""Diagram rendering for Sitepipe.

Diagram sources (Graphviz ``.dot`` files by default) found in the generator
output are piped through an external render service. The rendered image is
written beside its source with the same basename and a new extension, so the
asset stages that follow treat it like any other generated file.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path, PurePosixPath
from typing import Any

from .external import CommandRenderService
from .protocols import RenderService
from .utils import iter_files, matches_any

logger = logging.getLogger(__name__)


class DiagramRenderer:
    """Renders every diagram source below a directory.

    Attributes:
        service: Render service turning source bytes into image bytes.
        patterns: Glob patterns selecting diagram sources.
        extension: Extension of the rendered files (e.g., ".svg").
    """

    def __init__(
        self,
        service: RenderService,
        patterns: Sequence[str] = ("*.dot",),
        extension: str = ".svg",
    ):
        self.service = service
        self.patterns = tuple(patterns)
        self.extension = extension if extension.startswith(".") else f".{extension}"

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> DiagramRenderer:
        settings = config.get("diagrams", {})
        return cls(
            CommandRenderService(settings.get("command", ["dot", "-Tsvg"])),
            patterns=settings.get("patterns", ["*.dot"]),
            extension=settings.get("extension", ".svg"),
        )

    def target_for(self, rel_path: str) -> str:
        """Return the relative path of the rendered file for a source path."""
        return str(PurePosixPath(rel_path).with_suffix(self.extension))

    def render_tree(self, root: Path) -> list[str]:
        """Render all diagram sources below ``root`` in place.

        Args:
            root: Generator output directory.

        Returns:
            Relative paths of the rendered files.

        Raises:
            SubprocessFailed: If the renderer fails on any source.
        """
        rendered = []
        for rel in iter_files(root):
            if not matches_any(rel, self.patterns):
                continue
            output = self.service.render((root / rel).read_bytes())
            target = self.target_for(rel)
            (root / target).write_bytes(output)
            rendered.append(target)
            logger.debug("Rendered %s -> %s", rel, target)
        if rendered:
            logger.info("Rendered %d diagram(s)", len(rendered))
        return rendered
