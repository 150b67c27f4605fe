"""
Stratum - declarative infrastructure reconciliation engine
"""

from stratum.version import __version__, get_version

__all__ = ["__version__", "get_version"]
