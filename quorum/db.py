"""Async database connection and operations for the review workflow."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, cast

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import DEFAULT_BALLOT_THRESHOLD, SCHEMA_VERSION, settings
from .errors import (
    NotInitializedError,
    StorageCorruptionError,
    is_corruption_error,
    is_schema_missing_error,
    not_initialized_message,
    schema_not_initialized_message,
)
from .models import (
    Ballot,
    Base,
    DecisionScheme,
    Outcome,
    Phase,
    Retrospective,
    ReviewedItem,
    StoreMetadata,
    utcnow,
)

logger = logging.getLogger(__name__)

# Children first so a bulk reset never trips the ballots -> reviewed_items key
_RESET_ORDER = (Ballot, Outcome, DecisionScheme, Retrospective, ReviewedItem, StoreMetadata)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC)


class ReviewStore:
    """Durable keyed storage for every workflow table, backed by one SQLite file.

    Every public service call opens one session and commits once on exit,
    which is the point where the file on disk reflects the write.
    """

    def __init__(self, db_path: Path | str | None = None, *, echo: bool | None = None) -> None:
        self.db_path = Path(db_path) if db_path is not None else settings.db_path
        self._echo = settings.echo_sql if echo is None else echo
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def database_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.db_path}"

    @property
    def is_initialized(self) -> bool:
        return self._session_factory is not None

    def _create_engine(self) -> AsyncEngine:
        return create_async_engine(self.database_url, echo=self._echo)

    async def _create_schema(self, engine: AsyncEngine) -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    def _backup_corrupted_file(self) -> Path | None:
        suffix = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%f")
        backup = self.db_path.with_name(f"{self.db_path.name}.corrupted.{suffix}")
        try:
            self.db_path.rename(backup)
        except OSError:
            logger.exception("Failed to back up corrupted database %s", self.db_path)
            try:
                self.db_path.unlink()
            except OSError as exc:
                raise StorageCorruptionError(
                    f"Corrupted database {self.db_path} could not be moved aside"
                ) from exc
            return None
        logger.warning("Corrupted database backed up to %s", backup)
        return backup

    async def initialize(self) -> None:
        """Create the schema, recovering from an unreadable database file."""
        if self._session_factory is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        existed = self.db_path.exists() and self.db_path.stat().st_size > 0

        engine = self._create_engine()
        try:
            await self._create_schema(engine)
        except SQLAlchemyError as exc:
            await engine.dispose()
            if not (existed and is_corruption_error(exc)):
                raise
            logger.warning("Database %s is corrupted, recreating from scratch", self.db_path)
            self._backup_corrupted_file()
            engine = self._create_engine()
            try:
                await self._create_schema(engine)
            except SQLAlchemyError as retry_exc:
                await engine.dispose()
                raise StorageCorruptionError(
                    f"Could not recreate database at {self.db_path}"
                ) from retry_exc

        self._engine = engine
        self._session_factory = async_sessionmaker(engine, expire_on_commit=False)
        await self.set_metadata("schema_version", SCHEMA_VERSION)
        logger.info("Review store ready at %s", self.db_path)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._session_factory = None

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """Async context manager for database sessions."""
        if self._session_factory is None:
            raise NotInitializedError(not_initialized_message())
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as exc:
                await session.rollback()
                if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                    raise NotInitializedError(schema_not_initialized_message(exc)) from exc
                raise

    async def get_metadata(self, key: str) -> str | None:
        async with self.session() as session:
            return await get_metadata_value(session, key)

    async def set_metadata(self, key: str, value: str) -> None:
        async with self.session() as session:
            await set_metadata_value(session, key, value)

    async def reset(self) -> None:
        """Delete every row of every table."""
        async with self.session() as session:
            for model in _RESET_ORDER:
                await session.execute(delete(model))
            await set_metadata_value(session, "schema_version", SCHEMA_VERSION)
        logger.warning("Review store %s was reset", self.db_path)


# =============================================================================
# Upsert Primitive
# =============================================================================


async def update_or_insert(
    session: AsyncSession,
    model: type[Base],
    key: Mapping[str, Any],
    values: Mapping[str, Any],
    insert_defaults: Mapping[str, Any] | None = None,
) -> bool:
    """Update the row matching ``key``, inserting one when nothing matched.

    ``insert_defaults`` only apply to the insert branch. Returns True when an
    existing row was updated and False when a new row was inserted. A
    concurrent writer that inserts the same key first turns the insert into
    an update.
    """
    conditions = [getattr(model, column) == value for column, value in key.items()]
    statement = update(model).where(*conditions).values(**values)
    result = await session.execute(statement)
    if result.rowcount:
        return True

    try:
        async with session.begin_nested():
            session.add(model(**{**(insert_defaults or {}), **values, **key}))
    except IntegrityError:
        logger.debug("Lost insert race on %s %s, updating instead", model.__tablename__, key)
        await session.execute(statement)
        return True
    return False


# =============================================================================
# Metadata Operations
# =============================================================================


async def get_metadata_value(session: AsyncSession, key: str) -> str | None:
    result = await session.execute(select(StoreMetadata.value).where(StoreMetadata.key == key))
    return result.scalar_one_or_none()


async def set_metadata_value(session: AsyncSession, key: str, value: str) -> None:
    await update_or_insert(
        session, StoreMetadata, {"key": key}, {"value": value, "updated_at": utcnow()}
    )


# =============================================================================
# Reviewed Item Operations
# =============================================================================


async def get_item(session: AsyncSession, reference: str) -> ReviewedItem | None:
    """Get a reviewed item by its reference."""
    result = await session.execute(
        select(ReviewedItem).where(ReviewedItem.reference == reference)
    )
    return result.scalar_one_or_none()


async def upsert_item(
    session: AsyncSession,
    reference: str,
    threshold: int,
    first_pass_deadline: datetime | None = None,
) -> ReviewedItem:
    """Create the item in the blinded phase, or update its threshold in place."""
    values: dict[str, Any] = {"ballot_threshold": threshold, "updated_at": utcnow()}
    if first_pass_deadline is not None:
        values["first_pass_deadline"] = first_pass_deadline

    await update_or_insert(
        session,
        ReviewedItem,
        {"reference": reference},
        values,
        insert_defaults={"phase": Phase.BLINDED.value, "created_at": utcnow()},
    )
    return cast(ReviewedItem, await get_item(session, reference))


async def ensure_item(session: AsyncSession, reference: str) -> ReviewedItem:
    """Get an item, creating it with default settings on first use."""
    item = await get_item(session, reference)
    if item is not None:
        return item

    existed = await update_or_insert(
        session,
        ReviewedItem,
        {"reference": reference},
        {"updated_at": utcnow()},
        insert_defaults={
            "phase": Phase.BLINDED.value,
            "ballot_threshold": DEFAULT_BALLOT_THRESHOLD,
            "created_at": utcnow(),
        },
    )
    if not existed:
        logger.info("Auto-initialized %s for blinded review", reference)
    return cast(ReviewedItem, await get_item(session, reference))


async def flip_item_to_revealed(session: AsyncSession, reference: str) -> bool:
    """Move an item from blinded to revealed. Returns False if it was not blinded."""
    result = await session.execute(
        update(ReviewedItem)
        .where(ReviewedItem.reference == reference, ReviewedItem.phase == Phase.BLINDED.value)
        .values(phase=Phase.REVEALED.value, updated_at=utcnow())
    )
    return bool(result.rowcount)


async def mark_item_posted(session: AsyncSession, reference: str, external_ref: str) -> bool:
    """Record the published summary once. Returns False if already recorded."""
    now = utcnow()
    result = await session.execute(
        update(ReviewedItem)
        .where(
            ReviewedItem.reference == reference,
            ReviewedItem.posted_summary_ref.is_(None),
        )
        .values(posted_summary_ref=external_ref, posted_at=now, updated_at=now)
    )
    return bool(result.rowcount)


async def get_recent_items(session: AsyncSession, limit: int = 10) -> list[dict[str, Any]]:
    """Items ordered by latest activity (ballot submission or state update)."""
    result = await session.execute(
        select(
            ReviewedItem.reference,
            ReviewedItem.phase,
            ReviewedItem.updated_at,
            func.count(Ballot.id),
            func.max(Ballot.created_at),
        )
        .outerjoin(Ballot, Ballot.reference == ReviewedItem.reference)
        .group_by(ReviewedItem.reference)
    )

    items: list[dict[str, Any]] = []
    for reference, phase, updated_at, ballot_count, last_ballot in result.all():
        last_activity = max(a for a in (updated_at, last_ballot) if a is not None)
        items.append(
            {
                "reference": reference,
                "phase": phase,
                "ballot_count": int(ballot_count or 0),
                "last_activity": last_activity,
            }
        )
    items.sort(key=lambda i: i["last_activity"], reverse=True)
    return items[:limit]


# =============================================================================
# Ballot Operations
# =============================================================================


async def add_ballot(
    session: AsyncSession,
    reference: str,
    decision: str,
    confidence: int,
    rationale: str,
    author_metadata: dict[str, Any],
    nudge_responses: dict[str, Any] | None = None,
) -> Ballot:
    """Add an unrevealed ballot."""
    ballot = Ballot(
        reference=reference,
        decision=decision,
        confidence=confidence,
        rationale=rationale,
        author_metadata=author_metadata,
        nudge_responses=nudge_responses,
        revealed=False,
    )
    session.add(ballot)
    await session.flush()
    return ballot


async def count_ballots(session: AsyncSession, reference: str) -> int:
    result = await session.execute(
        select(func.count(Ballot.id)).where(Ballot.reference == reference)
    )
    return int(result.scalar_one())


async def get_ballots(session: AsyncSession, reference: str) -> list[Ballot]:
    """Get all ballots for an item, newest first."""
    result = await session.execute(
        select(Ballot)
        .where(Ballot.reference == reference)
        .order_by(Ballot.created_at.desc(), Ballot.id.desc())
    )
    return list(result.scalars().all())


async def get_all_ballots(session: AsyncSession) -> list[Ballot]:
    """Get every ballot, newest first."""
    result = await session.execute(
        select(Ballot).order_by(Ballot.created_at.desc(), Ballot.id.desc())
    )
    return list(result.scalars().all())


async def reveal_ballots(session: AsyncSession, reference: str) -> int:
    result = await session.execute(
        update(Ballot).where(Ballot.reference == reference).values(revealed=True)
    )
    return int(result.rowcount or 0)


# =============================================================================
# Outcome Operations
# =============================================================================


async def add_outcome(
    session: AsyncSession,
    item_ref: str,
    outcome_type: str,
    detected_auto: bool,
    detection_details: dict[str, Any] | None = None,
) -> Outcome:
    """Add an outcome. Outcomes not detected automatically count as confirmed."""
    outcome = Outcome(
        item_ref=item_ref,
        outcome_type=outcome_type,
        detected_auto=detected_auto,
        user_confirmed=not detected_auto,
        detection_details=detection_details,
    )
    session.add(outcome)
    await session.flush()
    return outcome


async def get_outcome(session: AsyncSession, outcome_id: int) -> Outcome | None:
    result = await session.execute(select(Outcome).where(Outcome.id == outcome_id))
    return result.scalar_one_or_none()


async def get_outcomes(session: AsyncSession, item_ref: str) -> list[Outcome]:
    """Get outcomes for an item, newest first."""
    result = await session.execute(
        select(Outcome)
        .where(Outcome.item_ref == item_ref)
        .order_by(Outcome.timestamp.desc(), Outcome.id.desc())
    )
    return list(result.scalars().all())


async def get_confirmed_outcomes(session: AsyncSession) -> list[Outcome]:
    """Get every user-confirmed outcome, newest first."""
    result = await session.execute(
        select(Outcome)
        .where(Outcome.user_confirmed.is_(True))
        .order_by(Outcome.timestamp.desc(), Outcome.id.desc())
    )
    return list(result.scalars().all())


# =============================================================================
# Decision Scheme Operations
# =============================================================================


async def add_decision_scheme(
    session: AsyncSession,
    item_ref: str,
    scheme_type: str,
    rationale: str,
    custom_name: str | None = None,
) -> DecisionScheme:
    scheme = DecisionScheme(
        item_ref=item_ref,
        scheme_type=scheme_type,
        rationale=rationale,
        custom_name=custom_name,
    )
    session.add(scheme)
    await session.flush()
    return scheme


async def get_latest_decision_scheme(
    session: AsyncSession, item_ref: str
) -> DecisionScheme | None:
    result = await session.execute(
        select(DecisionScheme)
        .where(DecisionScheme.item_ref == item_ref)
        .order_by(DecisionScheme.timestamp.desc(), DecisionScheme.id.desc())
        .limit(1)
    )
    return result.scalars().first()


async def get_scheme_distribution(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(DecisionScheme.scheme_type, func.count(DecisionScheme.id)).group_by(
            DecisionScheme.scheme_type
        )
    )
    return {scheme_type: int(count) for scheme_type, count in result.all()}


async def get_latest_schemes(session: AsyncSession) -> dict[str, DecisionScheme]:
    """Most recent decision scheme per item."""
    result = await session.execute(
        select(DecisionScheme).order_by(DecisionScheme.timestamp.desc(), DecisionScheme.id.desc())
    )
    latest: dict[str, DecisionScheme] = {}
    for scheme in result.scalars().all():
        latest.setdefault(scheme.item_ref, scheme)
    return latest


# =============================================================================
# Retrospective Operations
# =============================================================================


async def add_retrospective(
    session: AsyncSession,
    item_ref: str,
    trigger_type: str,
    what_went_wrong: str,
    what_to_improve: str,
    bias_patterns_json: str,
) -> Retrospective:
    retro = Retrospective(
        item_ref=item_ref,
        trigger_type=trigger_type,
        what_went_wrong=what_went_wrong,
        what_to_improve=what_to_improve,
        bias_patterns=bias_patterns_json,
    )
    session.add(retro)
    await session.flush()
    return retro


async def query_retrospectives(
    session: AsyncSession,
    *,
    item_ref: str | None = None,
    trigger_type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[Retrospective]:
    """Get retrospectives matching every given filter, newest first."""
    query = select(Retrospective)
    if item_ref:
        query = query.where(Retrospective.item_ref == item_ref)
    if trigger_type:
        query = query.where(Retrospective.trigger_type == trigger_type)
    if start is not None:
        query = query.where(Retrospective.timestamp >= _as_utc(start))
    if end is not None:
        query = query.where(Retrospective.timestamp <= _as_utc(end))
    query = query.order_by(Retrospective.timestamp.desc(), Retrospective.id.desc())

    result = await session.execute(query)
    return list(result.scalars().all())


async def count_retrospectives(session: AsyncSession) -> int:
    result = await session.execute(select(func.count(Retrospective.id)))
    return int(result.scalar_one())


async def get_raw_bias_patterns(session: AsyncSession) -> list[str | None]:
    result = await session.execute(select(Retrospective.bias_patterns))
    return list(result.scalars().all())
