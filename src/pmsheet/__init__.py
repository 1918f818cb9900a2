"""
pmsheet - Project management over shared spreadsheet-style stores

Granular locks, retry with backoff and optimistic conflict detection for
concurrent edits of projects, their tasks and their folders.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pmsheet.core.version import __version__

__all__ = ["__version__", "build_service", "main", "ProjectService"]

_LAZY_EXPORTS = {
    "build_service": "pmsheet.projects.service",
    "ProjectService": "pmsheet.projects.service",
    "main": "pmsheet.cli.main",
}

if TYPE_CHECKING:
    from pmsheet.cli.main import main
    from pmsheet.projects.service import ProjectService, build_service


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        import importlib

        return getattr(importlib.import_module(_LAZY_EXPORTS[name]), name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
