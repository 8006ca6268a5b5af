"""
Reconciliation drivers.
"""

from .reconciler import CycleReport, LoopState, ReconciliationLoop  # noqa: F401

__all__ = ["CycleReport", "LoopState", "ReconciliationLoop"]
