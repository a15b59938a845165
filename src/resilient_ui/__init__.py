"""resilient-ui: Failure-tolerant runtime for interactive configuration UIs."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("resilient-ui")
except PackageNotFoundError:
    __version__ = "0.1.0"

__all__ = ["__version__"]
