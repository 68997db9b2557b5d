"""Content transforms for Sitepipe stages.

Each transform is a pure function from bytes to bytes. Transforms that
validate their input raise TransformError on malformed content; the owning
stage decides whether that is fatal.

Functions:
    compose: Chain transforms left to right.
    minify_css / minify_js: Wrappers around rcssmin and rjsmin.
    minify_json / check_json: JSON compaction and validation.
    minify_xml / check_xml: XML comment and whitespace stripping, validation.
    make_svg_optimizer: SVG optimisation through svgo or XML stripping.
    optimize_image: Lossless raster optimisation with Pillow.
    minify_html: HTML minification with htmlmin.
"""

from __future__ import annotations

import io
import json
import logging
import re
import xml.etree.ElementTree as ET
from collections.abc import Iterable
from dataclasses import dataclass, field

import htmlmin
import rcssmin
import rjsmin
from PIL import Image

from .errors import SubprocessFailed, TransformError
from .protocols import RenderService, Transform

logger = logging.getLogger(__name__)

# One XML lexical unit: CDATA, comment, processing instruction, doctype,
# other declaration, tag (quoted attributes may contain ">"), or text.
_XML_TOKEN_RE = re.compile(
    rb"<!\[CDATA\[.*?\]\]>"
    rb"|<!--.*?-->"
    rb"|<\?.*?\?>"
    rb"|<!DOCTYPE(?:[^\[>]|\[.*?\])*>"
    rb"|<![^>]*>"
    rb"|<(?:[^>\"']|\"[^\"]*\"|'[^']*')*>"
    rb"|[^<]+",
    re.DOTALL,
)
_TAG_NAME_RE = re.compile(rb"<\s*([^\s/>]+)")
_SPACE_PRESERVE_RE = re.compile(rb"""\sxml:space\s*=\s*["']preserve["']""")
_SPACE_PRESERVING_ELEMENTS = {
    b"text", b"tspan", b"textPath", b"pre", b"title", b"desc", b"style", b"script",
}

# Formats Pillow can re-encode without loss.
OPTIMIZABLE_FORMATS = {"PNG", "GIF", "JPEG"}


def compose(transforms: Iterable[Transform]) -> Transform:
    """Chain transforms so each receives the previous one's output."""
    chain = list(transforms)

    def run(data: bytes) -> bytes:
        for transform in chain:
            data = transform(data)
        return data

    return run


def _text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise TransformError(f"not valid UTF-8 ({exc.reason} at byte {exc.start})") from exc


def minify_css(data: bytes) -> bytes:
    return rcssmin.cssmin(_text(data)).encode("utf-8")


def minify_js(data: bytes) -> bytes:
    return rjsmin.jsmin(_text(data)).encode("utf-8")


def check_json(data: bytes) -> bytes:
    """Validate JSON and return the input unchanged."""
    _load_json(data)
    return data


def minify_json(data: bytes) -> bytes:
    """Re-serialize JSON without insignificant whitespace."""
    payload = _load_json(data)
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def _load_json(data: bytes):
    try:
        return json.loads(_text(data))
    except json.JSONDecodeError as exc:
        raise TransformError(f"invalid JSON on line {exc.lineno}: {exc.msg}") from exc


def check_xml(data: bytes) -> bytes:
    """Validate XML well-formedness and return the input unchanged."""
    try:
        ET.fromstring(data)
    except ET.ParseError as exc:
        line, _col = exc.position
        raise TransformError(f"invalid XML on line {line}: {exc}") from exc
    return data


def minify_xml(data: bytes) -> bytes:
    """Strip comments and insignificant whitespace.

    A whitespace-only run is dropped when its parent element holds only
    child elements. Whitespace inside mixed content, inside text-bearing
    elements (SVG ``text``/``tspan``, ``pre``, ``style``...) and under
    ``xml:space="preserve"`` is kept, as are CDATA sections and conditional
    comments.
    """
    check_xml(data)
    out: list[bytes] = []
    stack: list[_XmlFrame] = []
    for match in _XML_TOKEN_RE.finditer(data):
        token = match.group()
        if token.startswith(b"<!--"):
            if token.startswith(b"<!--["):
                out.append(token)
        elif token.startswith(b"<![CDATA["):
            if stack:
                stack[-1].mixed = True
            out.append(token)
        elif token.startswith((b"<?", b"<!")):
            out.append(token)
        elif token.startswith(b"</"):
            frame = stack.pop()
            if not (frame.mixed or frame.preserve):
                for index in frame.blanks:
                    out[index] = b""
            out.append(token)
        elif token.startswith(b"<"):
            out.append(token)
            if not token.endswith(b"/>"):
                stack.append(_XmlFrame(_preserves_space(token, stack)))
        elif stack:
            if token.strip():
                stack[-1].mixed = True
            else:
                stack[-1].blanks.append(len(out))
            out.append(token)
    return b"".join(out).strip()


@dataclass
class _XmlFrame:
    preserve: bool
    mixed: bool = False
    blanks: list[int] = field(default_factory=list)


def _preserves_space(start_tag: bytes, stack: list[_XmlFrame]) -> bool:
    if stack and stack[-1].preserve:
        return True
    name = _TAG_NAME_RE.match(start_tag).group(1)
    local = name.rpartition(b":")[2]
    return local in _SPACE_PRESERVING_ELEMENTS or _SPACE_PRESERVE_RE.search(start_tag) is not None



def make_svg_optimizer(service: RenderService | None) -> Transform:
    """Build an SVG transform.

    Args:
        service: External optimiser (svgo) or None to fall back to
            XML comment and whitespace stripping.

    Returns:
        Transform validating and optimising SVG documents.
    """

    def optimize(data: bytes) -> bytes:
        if service is None:
            return minify_xml(data)
        check_xml(data)
        try:
            return service.render(data)
        except SubprocessFailed as exc:
            raise TransformError(f"svg optimizer failed: {exc.output or exc}") from exc

    return optimize


def optimize_image(data: bytes) -> bytes:
    """Losslessly re-encode a raster image, keeping whichever is smaller.

    Formats Pillow cannot identify or re-encode are returned unchanged.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            if img.format not in OPTIMIZABLE_FORMATS:
                return data
            out = io.BytesIO()
            save_kwargs = {"optimize": True}
            if img.format == "JPEG":
                save_kwargs["quality"] = "keep"
            img.save(out, format=img.format, **save_kwargs)
    except (OSError, ValueError) as exc:
        logger.debug("Image left as-is: %s", exc)
        return data
    optimized = out.getvalue()
    return optimized if len(optimized) < len(data) else data


def minify_html(data: bytes) -> bytes:
    text = _text(data)
    minified = htmlmin.minify(
        text,
        remove_comments=True,
        remove_empty_space=True,
        reduce_boolean_attributes=True,
    )
    return minified.encode("utf-8")
