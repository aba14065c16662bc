"""Shared fixtures for the crm_sync test suite."""

import logging
from datetime import datetime, timezone

import pytest

from crm_sync.storage.db import CRMDatabase
from crm_sync.utils.logging import MATCHING_LOGGER_NAME, ROOT_LOGGER_NAME
from crm_sync.utils.normalization import ContactMethodType


@pytest.fixture(autouse=True)
def reset_loggers():
    """Drop handlers installed by setup_logging between tests."""
    yield
    for name in (ROOT_LOGGER_NAME, MATCHING_LOGGER_NAME):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()
        logger.propagate = True


@pytest.fixture
def db():
    """Initialized in-memory database."""
    database = CRMDatabase(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def jane(db):
    """Contact with a personal email and a phone number."""
    return db.create_contact(
        "Jane Doe",
        methods=[
            (ContactMethodType.EMAIL_PERSONAL.value, "Jane@Example.com", True),
            (ContactMethodType.PHONE.value, "(555) 123-4567", False),
        ],
    )


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now=None):
        self.now = now or datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


@pytest.fixture
def clock():
    return FrozenClock()
