"""
Core package bootstrap for the gh-actions-scaler runtime.

Re-exports the reconciliation façade so callers can simply do::

    from ghscaler.core import ReconciliationLoop
"""

from __future__ import annotations

from ghscaler.core.controllers.reconciler import ReconciliationLoop

__all__ = ["ReconciliationLoop"]
