import pathlib
import site

import pytest
from pgbridge.features import get_features

HERE = pathlib.Path(pathlib.Path(__file__).resolve()).parent
site.addsitedir(HERE)


@pytest.fixture(autouse=True)
def clear_feature_cache():
    """Re-probe the environment for every test so patched probes don't leak."""
    get_features.cache_clear()
    yield
    get_features.cache_clear()


pytest_plugins = [
    'tests.fixtures.mocks',
    'tests.fixtures.postgres',
]
