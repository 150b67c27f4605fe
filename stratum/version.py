"""Stratum version information."""

__version__ = "0.4.0"


def get_version() -> str:
    """Return the package version string"""
    return __version__
