# Copyright 2019-2025 ETH Zurich and the DaCe authors. All rights reserved.
"""
pytest configuration file.
"""
import pytest

from onnxgrad.config import temporary_config


@pytest.fixture(autouse=True)
def restore_config():
    """Reset every configuration entry a test changes."""
    with temporary_config():
        yield


def pytest_generate_tests(metafunc):
    """
    This method sets up the parametrizations for the custom fixtures
    """
    if "static_shapes" in metafunc.fixturenames:
        metafunc.parametrize("static_shapes", [
            pytest.param(True, id="static_shapes"),
            pytest.param(False, id="dynamic_shapes"),
        ])
