"""
Fixtures and markers for tests run against a PostgreSQL server.
"""
import pathlib

import pytest

HERE = pathlib.Path(__file__).resolve().parent


def pytest_collection_modifyitems(config, items):
    """Mark every test in this directory so `-m "not postgres"` skips them."""
    for item in items:
        if HERE in pathlib.Path(item.path).parents:
            item.add_marker(pytest.mark.postgres)
