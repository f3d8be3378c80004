from collections.abc import Generator

import pytest

from koda.db.engine import SqlEngine


@pytest.fixture
def db_engine() -> Generator[None, None, None]:
    # A fresh in-memory database per test
    SqlEngine.reset_engine()
    SqlEngine.init_engine(db_url="sqlite://")
    SqlEngine.create_tables()
    yield
    SqlEngine.reset_engine()
