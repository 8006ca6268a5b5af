"""
gh-actions-scaler package.

Autoscales GitHub Actions self-hosted runner containers across a fleet of
SSH-reachable machines. Heavy dependencies (Ray, paramiko) are lazy-imported so
packaging tools do not need them during metadata builds.
"""

from __future__ import annotations

from importlib import import_module
from importlib.metadata import PackageNotFoundError, version

__all__ = [
    "AutoscalerHead",
    "ReconciliationLoop",
    "ScalerConfig",
    "load_config",
    "__version__",
]


try:
    __version__ = version("gh-actions-scaler")
except PackageNotFoundError:
    __version__ = "0.0.0"


_LAZY_TARGETS = {
    "AutoscalerHead": ("ghscaler.core.actors.head", "AutoscalerHead"),
    "ReconciliationLoop": ("ghscaler.core.controllers.reconciler", "ReconciliationLoop"),
    "ScalerConfig": ("ghscaler.core.config", "ScalerConfig"),
    "load_config": ("ghscaler.core.config", "load_config"),
}


def __getattr__(name: str):
    """Dynamically load public symbols to avoid importing optional deps early."""
    target = _LAZY_TARGETS.get(name)
    if target is None:
        raise AttributeError(f"module '{__name__}' has no attribute '{name}'")

    module_name, attribute = target
    module = import_module(module_name)
    value = getattr(module, attribute)
    globals()[name] = value  # cache for subsequent lookups
    return value
