from __future__ import annotations

import logging
import os

import pytest

from txbind import SQLiteResourceFactory, TransactionManager
from txbind.logging import configure_logging

from tests.helpers.accounts import AccountService, create_schema
from tests.mocks.connections import RecordingFactory

configure_logging(logging.WARNING, json=False)


@pytest.fixture
def store_path(tmp_path) -> str:
    path = str(tmp_path / "store.db")
    create_schema(path)
    return path


@pytest.fixture
def factory(store_path: str) -> RecordingFactory:
    return RecordingFactory(SQLiteResourceFactory(store_path))


@pytest.fixture
def manager(factory: RecordingFactory) -> TransactionManager:
    return TransactionManager(factory)


@pytest.fixture
def accounts(manager: TransactionManager) -> AccountService:
    return AccountService(manager)


@pytest.fixture
def postgres_dsn() -> str:
    dsn = os.getenv("TXBIND_TEST_POSTGRES_DSN")
    if not dsn:
        pytest.skip("TXBIND_TEST_POSTGRES_DSN is not set")
    return dsn
