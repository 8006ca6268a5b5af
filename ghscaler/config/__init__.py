"""
Configuration helpers that do not depend on the runtime (variable resolution).
"""

from .resolver import ConfigResolver  # noqa: F401

__all__ = ["ConfigResolver"]
