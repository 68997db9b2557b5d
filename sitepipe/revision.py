"""Asset revisioning for Sitepipe.

Revisioning renames static assets so their filenames embed a content
fingerprint, then rewrites references to those assets across all text files.
Browsers can then cache assets forever and still pick up changes.

Reference rewriting is a best-effort textual substitution: path-like tokens
are matched with a regular expression and replaced when they resolve to a
known file. Tokens that resolve to nothing are left alone, and paths built at
runtime (e.g. ``"/img/" + id + ".png"``) are never rewritten.

Key classes:
- PathPattern: A literal path or regular expression used in exclusion lists.
- ExclusionRules: The skip / skip-rename / skip-rewrite lists.
- Revisioner: Fingerprints, renames and rewrites a directory tree.
- RevisionResult: The reference map produced by a run.
"""

from __future__ import annotations

import hashlib
import json
import logging
import posixpath
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

from .errors import ConfigurationError
from .utils import iter_files

logger = logging.getLogger(__name__)

REGEX_PREFIX = "re:"
FINGERPRINT_LENGTH = 8

# A path-like token: optional leading slash, directories, and a file name with
# an extension. Tokens glued to a preceding word, dot or slash are ignored so
# that absolute URLs ("https://host/a.css") never match.
_REFERENCE_RE = re.compile(
    r"(?<![\w./~@:-])(?P<ref>/?(?:[\w@~.-]+/)*[\w@~-][\w@~.-]*\.[A-Za-z0-9]+)(?![\w/-])"
)


class PathPattern:
    """A literal relative path or a regular expression.

    Strings starting with ``re:`` and compiled patterns are searched in the
    relative path; any other string must equal the path (a leading slash is
    ignored).
    """

    def __init__(self, value: str | re.Pattern):
        self.source = value
        self.literal: str | None = None
        self.regex: re.Pattern | None = None
        if isinstance(value, re.Pattern):
            self.regex = value
        elif isinstance(value, str) and value.startswith(REGEX_PREFIX):
            try:
                self.regex = re.compile(value[len(REGEX_PREFIX):])
            except re.error as exc:
                raise ConfigurationError(f"Invalid exclusion pattern {value!r}: {exc}") from exc
        elif isinstance(value, str):
            self.literal = value.lstrip("/")
        else:
            raise ConfigurationError(f"Invalid exclusion pattern {value!r}")

    def __repr__(self) -> str:
        return f"PathPattern({self.source!r})"

    def matches(self, rel_path: str) -> bool:
        if self.regex is not None:
            return self.regex.search(rel_path) is not None
        return rel_path == self.literal


def _compile_all(values: Iterable[str | re.Pattern] | None) -> list[PathPattern]:
    return [PathPattern(value) for value in values or ()]


@dataclass
class ExclusionRules:
    """Ordered exclusion lists consumed by the revisioner.

    Attributes:
        skip: Paths excluded from revisioning entirely.
        skip_rename: Paths never renamed (references inside them are still rewritten).
        skip_rewrite: Paths whose content is never rewritten (they may still be renamed).
    """

    skip: list[PathPattern] = field(default_factory=list)
    skip_rename: list[PathPattern] = field(default_factory=list)
    skip_rewrite: list[PathPattern] = field(default_factory=list)

    @classmethod
    def from_lists(
        cls,
        skip: Iterable[str | re.Pattern] | None = None,
        skip_rename: Iterable[str | re.Pattern] | None = None,
        skip_rewrite: Iterable[str | re.Pattern] | None = None,
    ) -> ExclusionRules:
        return cls(_compile_all(skip), _compile_all(skip_rename), _compile_all(skip_rewrite))

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> ExclusionRules:
        settings = config.get("revision", {})
        return cls.from_lists(
            settings.get("skip"),
            settings.get("skip_rename"),
            settings.get("skip_rewrite"),
        )

    def is_skipped(self, rel_path: str) -> bool:
        return any(p.matches(rel_path) for p in self.skip)

    def can_rename(self, rel_path: str) -> bool:
        return not self.is_skipped(rel_path) and not any(
            p.matches(rel_path) for p in self.skip_rename
        )

    def can_rewrite(self, rel_path: str) -> bool:
        return not self.is_skipped(rel_path) and not any(
            p.matches(rel_path) for p in self.skip_rewrite
        )


@dataclass
class RevisionResult:
    """Reference map of one revisioning run.

    Attributes:
        mapping: Every original relative path to its final relative path.
        rewritten: Files whose content changed through reference rewriting.
    """

    mapping: dict[str, str]
    rewritten: list[str] = field(default_factory=list)

    @property
    def renamed(self) -> dict[str, str]:
        return {src: dst for src, dst in self.mapping.items() if src != dst}

    def manifest(self) -> str:
        return json.dumps(self.renamed, indent=2, sort_keys=True) + "\n"


def fingerprint(data: bytes) -> str:
    """Return the content fingerprint of a file: leading hex digits of its MD5.

    Examples:
        >>> fingerprint(b"body{}")
        'aa676972'
    """
    return hashlib.md5(data).hexdigest()[:FINGERPRINT_LENGTH]


def fingerprint_name(rel_path: str, digest: str) -> str:
    """Embed a fingerprint in a file name, keeping directory and extension.

    Examples:
        >>> fingerprint_name("assets/app.min.js", "0123abcd")
        'assets/app.min.0123abcd.js'

        >>> fingerprint_name("LICENSE", "0123abcd")
        'LICENSE.0123abcd'
    """
    path = PurePosixPath(rel_path)
    if path.suffix:
        name = f"{path.stem}.{digest}{path.suffix}"
    else:
        name = f"{path.name}.{digest}"
    return str(path.with_name(name))


class Revisioner:
    """Content-hash revisioner.

    Attributes:
        rules: Exclusion rules.
        base_path: URL path the site is mounted under (e.g. "/blog"); stripped
            from root-relative references before resolving them.
    """

    def __init__(self, rules: ExclusionRules | None = None, base_path: str = ""):
        self.rules = rules or ExclusionRules()
        self.base_path = "/" + base_path.strip("/") if base_path.strip("/") else ""

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> Revisioner:
        return cls(
            ExclusionRules.from_config(config),
            base_path=config.get("revision", {}).get("base_path", ""),
        )

    def revision(self, src_dir: Path, dest_dir: Path) -> RevisionResult:
        """Revision every file of ``src_dir`` into ``dest_dir``.

        Args:
            src_dir: Post-processed build directory.
            dest_dir: Serve directory to write into (should be empty).

        Returns:
            RevisionResult with the reference map.
        """
        files = {rel: (src_dir / rel).read_bytes() for rel in iter_files(src_dir)}
        result, outputs = self.revision_files(files)
        for rel, data in outputs.items():
            target = dest_dir / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        logger.info(
            "Revisioned %d files (%d renamed, %d rewritten)",
            len(files),
            len(result.renamed),
            len(result.rewritten),
        )
        return result

    def revision_files(self, files: Mapping[str, bytes]) -> tuple[RevisionResult, dict[str, bytes]]:
        """Revision an in-memory file set.

        Args:
            files: Relative path to content.

        Returns:
            Tuple of (RevisionResult, final path to final content).
        """
        renameable = {rel for rel in files if self.rules.can_rename(rel)}
        texts = {
            rel: text
            for rel, text in ((rel, _decode(data)) for rel, data in files.items())
            if text is not None and self.rules.can_rewrite(rel)
        }
        mapping: dict[str, str] = {}
        for rel in sorted(files):
            if rel in renameable:
                mapping[rel] = fingerprint_name(rel, fingerprint(files[rel]))
            else:
                mapping[rel] = rel

        outputs: dict[str, bytes] = {}
        rewritten = []
        for rel in sorted(files):
            data = files[rel]
            if rel in texts:
                updated = self.rewrite(rel, texts[rel], mapping)
                if updated != texts[rel]:
                    data = updated.encode("utf-8")
                    rewritten.append(rel)
            outputs[mapping[rel]] = data
        return RevisionResult(mapping=mapping, rewritten=rewritten), outputs

    def rewrite(self, rel_path: str, text: str, mapping: Mapping[str, str]) -> str:
        """Replace references in ``text`` that resolve to renamed files.

        Args:
            rel_path: Path of the file being rewritten (for relative references).
            text: File content.
            mapping: Original path to final path.

        Returns:
            The rewritten text.
        """

        def repl(match: re.Match) -> str:
            token = match.group("ref")
            target = self.resolve(rel_path, token, mapping)
            if target is None or mapping[target] == target:
                return token
            old_name = posixpath.basename(target)
            new_name = posixpath.basename(mapping[target])
            return token[: len(token) - len(old_name)] + new_name

        return _REFERENCE_RE.sub(repl, text)

    def resolve(self, rel_path: str, token: str, keys: Mapping[str, Any] | set[str]) -> str | None:
        """Resolve a path-like token found in ``rel_path`` to a known file.

        Root-relative tokens resolve against the site root (after stripping
        ``base_path``); other tokens resolve against the referencing file's
        directory first, then against the site root.
        """
        if token.startswith("/"):
            if self.base_path and token.startswith(self.base_path + "/"):
                token = token[len(self.base_path):]
            candidate = token.lstrip("/")
            return candidate if candidate in keys else None
        base = posixpath.dirname(rel_path)
        candidate = posixpath.normpath(posixpath.join(base, token))
        if candidate in keys:
            return candidate
        if token in keys:
            return token
        return None


def _decode(data: bytes) -> str | None:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return None
