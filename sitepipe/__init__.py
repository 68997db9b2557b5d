"""Sitepipe static site build pipeline.

This package orchestrates an external site generator and post-processes its output:
asset minification, diagram rendering, content-hash revisioning, a local HTTPS
development server with live reload, and publishing to a hosting branch.

The main entry point is the CLI module, which exposes the named pipeline tasks
(build, rebuild, serve, serve-clean, lint, deploy, clean).

Architecture:
- Each pipeline step is a stage with a small contract (file set in, file set out).
- External tools sit behind protocols so the orchestrator can be tested without them.
- The orchestrator wires stages into a sequence with one parallel fan-out/fan-in.
"""

__all__ = ["__version__"]
__version__ = "0.1.0"
