import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from receipts_api.core.db import ensure_tables
from receipts_api.core.lifecycle import ReceiptService
from receipts_api.core.store import ReceiptStore


def _memory_engine():
    return create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)


@pytest.fixture
def engine():
    eng = _memory_engine()
    ensure_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def loose_engine():
    """Engine without the unique aggregate index, to reproduce legacy duplicates."""
    eng = _memory_engine()
    ensure_tables(eng, unique_aggregates=False)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    return ReceiptStore(engine)


@pytest.fixture
def loose_store(loose_engine):
    return ReceiptStore(loose_engine)


@pytest.fixture
def service(store):
    return ReceiptService(store)
