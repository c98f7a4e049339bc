"""Shared test fixtures for Threatly."""

import tempfile

import pytest

from threatly.database import Database, reset_db


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    reset_db()
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(f"{tmpdir}/test.db")
        yield db
    reset_db()


@pytest.fixture
def catalog(temp_db):
    """A one-keyword catalog stored in the temp database."""
    temp_db.insert_keyword(
        name="automotive", display_name="Automotive", description="car security"
    )
    return temp_db.list_keywords()
