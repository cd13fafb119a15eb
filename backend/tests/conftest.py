from datetime import date

import pytest

from budget_tracker.store import store


@pytest.fixture(autouse=True)
def clean_store():
    store.reset()
    yield
    store.reset()


@pytest.fixture
def today() -> date:
    # A Saturday.
    return date(2024, 6, 15)
