"""Shared test fixtures and configuration for pytest."""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio

from quorum.ballots import BallotManager
from quorum.db import ReviewStore
from quorum.phase import PhaseController


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Temporary SQLite file for one test."""
    return tmp_path / "quorum.db"


@pytest_asyncio.fixture
async def store(db_path: Path) -> AsyncGenerator[ReviewStore]:
    """Initialized review store, disposed after the test."""
    review_store = ReviewStore(db_path)
    await review_store.initialize()
    yield review_store
    await review_store.dispose()


@pytest.fixture
def phases(store: ReviewStore) -> PhaseController:
    return PhaseController(store)


@pytest.fixture
def ballots(store: ReviewStore, phases: PhaseController) -> BallotManager:
    return BallotManager(store, phases)
