"""Interactive terminal front-end for ACP agents with a tool approval queue."""

from __future__ import annotations

from importlib import metadata

try:
    __version__ = metadata.version("tollgate")
except metadata.PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = ["__version__"]
