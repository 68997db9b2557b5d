"""HTML utility functions for Sitepipe.

This module provides the HTML manipulation used by the HTML stage: replacing
``<img data-inline>`` tags that point at SVG files with the SVG markup itself.

Functions:
    inline_svgs: Replace marked SVG images with their markup.
    make_svg_inliner: Bind inline_svgs to a build directory as a transform.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from pathlib import Path

from .errors import TransformError
from .protocols import Transform

logger = logging.getLogger(__name__)

# <img ...> tags carrying a bare data-inline attribute
_INLINE_IMG_RE = re.compile(r"<img\b(?=[^>]*\sdata-inline(?=[\s/>=]))[^>]*>", re.IGNORECASE)
_SRC_ATTR_RE = re.compile(r"""\bsrc=(["'])(?P<url>[^"']+)\1""", re.IGNORECASE)
_XML_PROLOG_RE = re.compile(r"^\s*(<\?xml[^>]*\?>\s*)?(<!DOCTYPE[^>]*>\s*)?", re.IGNORECASE)

# URL prefixes that never refer to a local file
_URL_SKIP_PREFIXES = (
    "http://",
    "https://",
    "//",
    "data:",
)


def inline_svgs(html: str, load: Callable[[str], str | None]) -> str:
    """Replace ``<img data-inline src="...svg">`` tags with inline SVG markup.

    Only root-relative sources are resolved. Tags whose source cannot be
    loaded are left unchanged.

    Args:
        html: HTML document.
        load: Callback returning the SVG text for a root-relative path, or None.

    Returns:
        HTML with marked images replaced.

    Examples:
        >>> inline_svgs('<img data-inline src="/a.svg">', lambda p: '<svg/>')
        '<svg/>'
    """

    def repl(match: re.Match) -> str:
        tag = match.group(0)
        src = _SRC_ATTR_RE.search(tag)
        if not src:
            return tag
        url = src.group("url").split("?", 1)[0].split("#", 1)[0]
        if url.startswith(_URL_SKIP_PREFIXES) or not url.lower().endswith(".svg"):
            return tag
        markup = load(url.lstrip("/"))
        if markup is None:
            logger.warning("Cannot inline %s: file not found", url)
            return tag
        return _XML_PROLOG_RE.sub("", markup, count=1).strip()

    return _INLINE_IMG_RE.sub(repl, html)


def make_svg_inliner(build_dir: Path) -> Transform:
    """Create a transform that inlines SVGs already written to ``build_dir``."""

    def load(rel_path: str) -> str | None:
        path = build_dir / rel_path
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    def transform(data: bytes) -> bytes:
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise TransformError(f"not valid UTF-8: {exc.reason}") from exc
        if "data-inline" not in text:
            return data
        return inline_svgs(text, load).encode("utf-8")

    return transform
