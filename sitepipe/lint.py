"""Linting for Sitepipe.

The lint task aggregates several checkers over the generator output. Every
checker runs and every issue is collected before the task decides whether
to fail, so one run reports all problems.

Key classes:
- LintIssue / LintReport: Collected findings.
- JsonChecker, XmlChecker: Well-formedness checks.
- HtmlChecker: Accessibility checks (img alt, html lang) on parsed documents.
- ExternalChecker: Runs an installed linter (stylelint, eslint, htmlhint).
- Linter: Runs a list of checkers.
"""

from __future__ import annotations

import json
import logging
import xml.etree.ElementTree as ET
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from bs4 import BeautifulSoup

from .errors import SubprocessFailed
from .external import find_executable, run_command
from .protocols import Checker
from .utils import iter_files, matches_any

logger = logging.getLogger(__name__)

ERROR = "error"
WARNING = "warning"


@dataclass(frozen=True)
class LintIssue:
    checker: str
    path: str
    message: str
    line: int | None = None
    severity: str = ERROR

    def format(self) -> str:
        location = f"{self.path}:{self.line}" if self.line else self.path
        return f"{location}: {self.severity}: {self.message} [{self.checker}]"


@dataclass
class LintReport:
    issues: list[LintIssue] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def errors(self) -> list[LintIssue]:
        return [i for i in self.issues if i.severity == ERROR]

    @property
    def warnings(self) -> list[LintIssue]:
        return [i for i in self.issues if i.severity == WARNING]


class JsonChecker:
    name = "json"
    patterns = ("*.json", "*.webmanifest")

    def check(self, root: Path, rel_paths: list[str]) -> list[LintIssue]:
        issues = []
        for rel in rel_paths:
            if not matches_any(rel, self.patterns):
                continue
            try:
                json.loads((root / rel).read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                issues.append(LintIssue(self.name, rel, exc.msg, exc.lineno))
            except UnicodeDecodeError as exc:
                issues.append(LintIssue(self.name, rel, f"not valid UTF-8: {exc.reason}"))
        return issues


class XmlChecker:
    name = "xml"
    patterns = ("*.xml", "*.svg")

    def check(self, root: Path, rel_paths: list[str]) -> list[LintIssue]:
        issues = []
        for rel in rel_paths:
            if not matches_any(rel, self.patterns):
                continue
            try:
                ET.fromstring((root / rel).read_bytes())
            except ET.ParseError as exc:
                issues.append(LintIssue(self.name, rel, str(exc), exc.position[0]))
        return issues


class HtmlChecker:
    """Accessibility checks on parsed HTML documents.

    Markup structure (unbalanced or stray tags) is left to htmlhint.
    """

    name = "html"
    patterns = ("*.html", "*.htm")

    def check(self, root: Path, rel_paths: list[str]) -> list[LintIssue]:
        issues = []
        for rel in rel_paths:
            if not matches_any(rel, self.patterns):
                continue
            soup = BeautifulSoup((root / rel).read_bytes(), "html.parser")
            issues.extend(self.audit(rel, soup))
        return issues

    def audit(self, rel: str, soup: BeautifulSoup) -> list[LintIssue]:
        issues = []
        html = soup.find("html")
        if html is not None and not html.get("lang", "").strip():
            issues.append(
                LintIssue(
                    self.name, rel, "<html> is missing a lang attribute", html.sourceline, WARNING
                )
            )
        for img in soup.find_all("img"):
            if not img.has_attr("alt"):
                issues.append(
                    LintIssue(self.name, rel, "<img> is missing an alt attribute", img.sourceline)
                )
        return issues


class ExternalChecker:
    """Runs an installed command-line linter.

    Every non-empty output line of a failing run becomes one issue. The
    checker is skipped when the executable cannot be found.
    """

    def __init__(
        self,
        name: str,
        executable: str,
        patterns: Sequence[str],
        args: Sequence[str] = (),
        project_root: Path | None = None,
        runner=run_command,
    ):
        self.name = name
        self.executable = executable
        self.patterns = tuple(patterns)
        self.args = list(args)
        self.project_root = project_root
        self._runner = runner

    def available(self) -> bool:
        return find_executable(self.executable, self.project_root) is not None

    def check(self, root: Path, rel_paths: list[str]) -> list[LintIssue]:
        selected = [rel for rel in rel_paths if matches_any(rel, self.patterns)]
        if not selected:
            return []
        binary = find_executable(self.executable, self.project_root)
        if binary is None:
            return []
        try:
            self._runner([binary, *self.args, *selected], cwd=root)
        except SubprocessFailed as exc:
            lines = [line for line in exc.output.splitlines() if line.strip()]
            if not lines:
                lines = [f"{self.executable} exited with status {exc.returncode}"]
            return [LintIssue(self.name, ".", line.strip()) for line in lines]
        return []


def default_checkers(project_root: Path) -> list[Checker]:
    return [
        JsonChecker(),
        XmlChecker(),
        HtmlChecker(),
        ExternalChecker("stylelint", "stylelint", ("*.css",), project_root=project_root),
        ExternalChecker("eslint", "eslint", ("*.js",), project_root=project_root),
        ExternalChecker("htmlhint", "htmlhint", ("*.html",), project_root=project_root),
    ]


class Linter:
    """Runs every checker over a directory and aggregates the issues."""

    def __init__(self, checkers: Iterable[Checker]):
        self.checkers = list(checkers)

    def run(self, root: Path) -> LintReport:
        rel_paths = iter_files(root)
        report = LintReport()
        for checker in self.checkers:
            if isinstance(checker, ExternalChecker) and not checker.available():
                logger.warning("%s not installed; skipping", checker.executable)
                report.skipped.append(checker.name)
                continue
            issues = checker.check(root, rel_paths)
            logger.debug("%s: %d issue(s)", checker.name, len(issues))
            report.issues.extend(issues)
        return report
