"""mongofleet package bootstrap.

Exposes lightweight metadata used by the CLI and packaging machinery.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: Hatch reads the package version from this module.
__version__ = "0.1.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
