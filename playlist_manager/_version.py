"""
Defines the application's version string.

This is the single source of truth for the application's version number.
It is reported by `--version` and compared against GitHub releases by the updater.
"""

__version__ = "0.4.0"
