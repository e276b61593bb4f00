from pathlib import Path

import pytest
from sqlalchemy import select, text

from quorum import db
from quorum.config import SCHEMA_VERSION
from quorum.db import ReviewStore, update_or_insert
from quorum.errors import NotInitializedError, is_corruption_error
from quorum.models import Ballot, ReviewedItem, StoreMetadata


@pytest.mark.asyncio
async def test_initialize_writes_schema_version(store: ReviewStore) -> None:
    assert store.is_initialized
    assert await store.get_metadata("schema_version") == SCHEMA_VERSION


@pytest.mark.asyncio
async def test_initialize_is_idempotent(store: ReviewStore) -> None:
    await store.set_metadata("owner", "platform-team")
    await store.initialize()

    assert await store.get_metadata("owner") == "platform-team"


@pytest.mark.asyncio
async def test_initialize_creates_parent_directory(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "dir" / "quorum.db"
    review_store = ReviewStore(path)
    await review_store.initialize()
    try:
        assert path.exists()
    finally:
        await review_store.dispose()


@pytest.mark.asyncio
async def test_session_before_initialize_raises(db_path: Path) -> None:
    review_store = ReviewStore(db_path)

    with pytest.raises(NotInitializedError):
        async with review_store.session():
            pass

    with pytest.raises(NotInitializedError):
        await review_store.get_metadata("schema_version")


@pytest.mark.asyncio
async def test_missing_table_raises_not_initialized(store: ReviewStore) -> None:
    async with store.session() as session:
        await session.execute(text("DROP TABLE outcomes"))

    with pytest.raises(NotInitializedError) as exc_info:
        async with store.session() as session:
            await db.get_outcomes(session, "acme/api#1")

    assert "outcomes" in exc_info.value.message
    assert "quorum init-db" in exc_info.value.message


@pytest.mark.asyncio
async def test_update_or_insert_inserts_then_updates(store: ReviewStore) -> None:
    async with store.session() as session:
        updated = await update_or_insert(session, StoreMetadata, {"key": "k"}, {"value": "one"})
    assert updated is False

    async with store.session() as session:
        updated = await update_or_insert(session, StoreMetadata, {"key": "k"}, {"value": "two"})
    assert updated is True

    async with store.session() as session:
        rows = (
            await session.execute(select(StoreMetadata).where(StoreMetadata.key == "k"))
        ).scalars().all()
    assert len(rows) == 1
    assert rows[0].value == "two"


@pytest.mark.asyncio
async def test_update_or_insert_applies_insert_defaults_only_on_insert(
    store: ReviewStore,
) -> None:
    async with store.session() as session:
        await update_or_insert(
            session,
            ReviewedItem,
            {"reference": "acme/api#1"},
            {"ballot_threshold": 2},
            insert_defaults={"phase": "revealed"},
        )
        await update_or_insert(
            session,
            ReviewedItem,
            {"reference": "acme/api#1"},
            {"ballot_threshold": 4},
            insert_defaults={"phase": "blinded"},
        )

    async with store.session() as session:
        item = await db.get_item(session, "acme/api#1")
    assert item is not None
    assert item.ballot_threshold == 4
    assert item.phase == "revealed"


@pytest.mark.asyncio
async def test_failed_session_rolls_back(store: ReviewStore) -> None:
    with pytest.raises(RuntimeError):
        async with store.session() as session:
            await db.set_metadata_value(session, "draft", "value")
            raise RuntimeError("boom")

    assert await store.get_metadata("draft") is None


@pytest.mark.asyncio
async def test_reset_clears_every_table(store: ReviewStore) -> None:
    async with store.session() as session:
        await db.ensure_item(session, "acme/api#1")
        await db.add_ballot(session, "acme/api#1", "approve", 4, "Looks well tested", {})
        await db.add_outcome(session, "acme/api#1", "merged_clean", False)

    await store.reset()

    async with store.session() as session:
        assert await db.get_item(session, "acme/api#1") is None
        assert await db.count_ballots(session, "acme/api#1") == 0
        assert await db.get_outcomes(session, "acme/api#1") == []
        assert (await session.execute(select(Ballot))).scalars().all() == []
    assert await store.get_metadata("schema_version") == SCHEMA_VERSION


@pytest.mark.asyncio
async def test_corrupted_file_is_backed_up_and_recreated(db_path: Path) -> None:
    db_path.write_bytes(b"definitely not a sqlite database " * 128)

    review_store = ReviewStore(db_path)
    await review_store.initialize()
    try:
        backups = list(db_path.parent.glob(f"{db_path.name}.corrupted.*"))
        assert len(backups) == 1
        assert backups[0].read_bytes().startswith(b"definitely not")

        await review_store.set_metadata("after", "recovery")
        assert await review_store.get_metadata("after") == "recovery"
    finally:
        await review_store.dispose()


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("file is not a database", True),
        ("database disk image is malformed", True),
        ("malformed JSON in column author_metadata", False),
        ("UNIQUE constraint failed: reviewed_items.reference", False),
    ],
)
def test_is_corruption_error(message: str, expected: bool) -> None:
    try:
        raise RuntimeError("initialize failed") from ValueError(message)
    except RuntimeError as exc:
        assert is_corruption_error(exc) is expected


@pytest.mark.asyncio
async def test_data_survives_reopen(db_path: Path) -> None:
    first = ReviewStore(db_path)
    await first.initialize()
    await first.set_metadata("team", "payments")
    await first.dispose()

    second = ReviewStore(db_path)
    await second.initialize()
    try:
        assert await second.get_metadata("team") == "payments"
    finally:
        await second.dispose()


@pytest.mark.asyncio
async def test_ensure_item_creates_once_with_defaults(store: ReviewStore) -> None:
    async with store.session() as session:
        created = await db.ensure_item(session, "acme/api#2")
    async with store.session() as session:
        again = await db.ensure_item(session, "acme/api#2")

    assert created.phase == "blinded"
    assert created.ballot_threshold == 3
    assert again.reference == created.reference
