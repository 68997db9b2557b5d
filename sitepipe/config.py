"""Configuration loading for Sitepipe.

Configuration lives in ``sitepipe.yaml`` at the project root and is merged over
DEFAULT_CONFIG. The build environment and the directory layout derived from it
are also defined here.

Key items:
- BuildEnv: The build mode (development or production).
- BuildPaths: The three snapshot directories of one environment.
- load_config: Load and merge the project configuration.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError

CONFIG_FILENAME = "sitepipe.yaml"

DEFAULT_CONFIG: dict[str, Any] = {
    "output_root": "dist",
    "generator": {
        "command": [
            "bundle",
            "exec",
            "jekyll",
            "build",
            "--destination",
            "{destination}",
        ],
        "env_var": "JEKYLL_ENV",
        "timeout": None,
    },
    "diagrams": {
        "command": ["dot", "-Tsvg"],
        "patterns": ["*.dot"],
        "extension": ".svg",
    },
    "stages": {},
    "revision": {
        "skip": [],
        "skip_rename": [
            r"re:\.html$",
            r"re:\.xml$",
            r"re:\.txt$",
            r"re:\.webmanifest$",
            "favicon.ico",
            "CNAME",
        ],
        "skip_rewrite": [
            r"re:\.(png|jpe?g|gif|webp|ico|woff2?|ttf|otf|eot|pdf)$",
        ],
        "manifest": "rev-manifest.json",
    },
    "server": {
        "host": "localhost",
        "port": 4000,
        "ws_port": None,
        "cert": "certs/localhost.crt",
        "key": "certs/localhost.key",
        "not_found": "404.html",
    },
    "watch": {
        "paths": ["."],
        "ignore": [
            ".git",
            "node_modules",
            ".jekyll-cache",
            ".sass-cache",
            "_site",
            "vendor",
        ],
    },
    "publish": {
        "remote": "",
        "branch": "gh-pages",
        "nojekyll": True,
    },
    "lint": {
        "fail_on_error": True,
    },
    "environments": {
        "development": {"minify": False},
        "production": {"minify": True},
    },
}


class BuildEnv(str, Enum):
    """Build mode selecting the output directory and feature flags."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"

    @classmethod
    def parse(cls, value: str) -> BuildEnv:
        try:
            return cls(value.strip().lower())
        except ValueError:
            choices = ", ".join(env.value for env in cls)
            raise ConfigurationError(
                f"Unknown environment '{value}' (expected one of: {choices})"
            ) from None


@dataclass(frozen=True)
class BuildPaths:
    """Directory layout for one environment.

    Attributes:
        root: ``<output-root>/<env>``.
        generated: Raw generator output (``jekyll-build``).
        build: Post-processed assets (``build``).
        serve: Revisioned, servable site (``serve``).
    """

    root: Path

    @classmethod
    def for_env(cls, project_root: Path, config: dict[str, Any], env: BuildEnv) -> BuildPaths:
        output_root = Path(config.get("output_root", "dist"))
        if not output_root.is_absolute():
            output_root = project_root / output_root
        return cls(root=output_root / env.value)

    @property
    def generated(self) -> Path:
        return self.root / "jekyll-build"

    @property
    def build(self) -> Path:
        return self.root / "build"

    @property
    def serve(self) -> Path:
        return self.root / "serve"


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(project_root: Path) -> dict[str, Any]:
    """Load pipeline configuration from sitepipe.yaml.

    Args:
        project_root: Root directory of the project.

    Returns:
        Dictionary containing configuration values, with defaults applied.

    Raises:
        ConfigurationError: If the file is not valid YAML or not a mapping.
    """
    config_path = project_root / CONFIG_FILENAME
    if not config_path.exists():
        return copy.deepcopy(DEFAULT_CONFIG)
    with open(config_path, encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"{config_path}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"{config_path}: expected a mapping at top level")
    return _merge(DEFAULT_CONFIG, loaded)


def env_flags(config: dict[str, Any], env: BuildEnv) -> dict[str, Any]:
    """Return the feature flags configured for an environment."""
    flags = {"minify": env is BuildEnv.PRODUCTION}
    flags.update(config.get("environments", {}).get(env.value) or {})
    return flags
