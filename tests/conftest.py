"""
Shared pytest fixtures.
"""

from __future__ import annotations

import logging

import pytest
import ray

import fakes

logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s", force=True)
logging.getLogger("ghscaler").setLevel(logging.DEBUG)


@pytest.fixture
def ray_runtime():
    """Spin up a local Ray runtime for tests and mirror worker logs to the driver."""
    # Ship the test doubles to workers by value; ``tests/`` is not on their path.
    ray.cloudpickle.register_pickle_by_value(fakes)
    try:
        ray.init(
            ignore_reinit_error=True,
            num_cpus=2,
            include_dashboard=False,
            logging_level=logging.INFO,
        )
    except PermissionError as exc:
        pytest.skip(f"Ray init requires system permissions not available in this environment: {exc}")
    except Exception as exc:  # pragma: no cover - defensive guard for restricted sandboxes
        if "Operation not permitted" in str(exc):
            pytest.skip(f"Ray init skipped due to restricted environment: {exc}")
        raise
    try:
        yield
    finally:
        ray.shutdown()


@pytest.fixture
def clock():
    return fakes.FakeClock()


@pytest.fixture
def remote():
    return fakes.FakeRemote()


@pytest.fixture
def provisioner():
    return fakes.FakeProvisioner()
