"""
Execution of reconciliation plans against remote collaborators.
"""

from .executor import ActionExecutor, ExecutionReport  # noqa: F401

__all__ = ["ActionExecutor", "ExecutionReport"]
