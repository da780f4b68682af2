import pathlib
import site

import pytest
from procdb.records import clear_schema_cache

HERE = pathlib.Path(pathlib.Path(__file__).resolve()).parent
site.addsitedir(HERE)


@pytest.fixture(autouse=True)
def clear_caches():
    """Clear record schema cache before and after each test to ensure test isolation."""
    clear_schema_cache()
    yield
    clear_schema_cache()


pytest_plugins = [
    'tests.fixtures.mocks',
    'tests.fixtures.records',
]
