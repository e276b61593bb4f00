"""
Blinded to revealed lifecycle of a reviewed item.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .config import DEFAULT_BALLOT_THRESHOLD
from .db import ReviewStore
from .errors import ValidationError
from .models import Phase, ReviewedItem

logger = logging.getLogger(__name__)


class RevealStatus(StrEnum):
    REVEALED = "revealed"
    ALREADY_REVEALED = "already_revealed"
    NOT_STARTED = "not_started"
    THRESHOLD_NOT_MET = "threshold_not_met"


class PhaseController:
    """Owns the phase of each item and the threshold that gates the reveal."""

    def __init__(self, store: ReviewStore) -> None:
        self._store = store

    async def initialize(
        self,
        reference: str,
        threshold: int = DEFAULT_BALLOT_THRESHOLD,
        first_pass_deadline: datetime | None = None,
    ) -> ReviewedItem:
        """Start blinded review of an item, or update its threshold.

        Re-initializing never moves a revealed item back to blinded.
        """
        if not reference:
            raise ValidationError("Reference is required")
        if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 1:
            raise ValidationError("Ballot threshold must be at least 1")

        async with self._store.session() as session:
            item = await db.upsert_item(session, reference, threshold, first_pass_deadline)
        logger.info("Initialized %s (threshold=%d, phase=%s)", reference, threshold, item.phase)
        return item

    async def get_item(self, reference: str) -> ReviewedItem | None:
        async with self._store.session() as session:
            return await db.get_item(session, reference)

    async def get_phase(self, reference: str) -> Phase | None:
        item = await self.get_item(reference)
        return Phase(item.phase) if item else None

    async def can_submit(self, reference: str) -> bool:
        async with self._store.session() as session:
            item = await db.get_item(session, reference)
        return item is None or item.phase == Phase.BLINDED

    async def can_reveal(self, reference: str) -> bool:
        async with self._store.session() as session:
            return await check_can_reveal(session, reference)

    async def reveal(self, reference: str) -> RevealStatus:
        """Flip the item to revealed and unblind all of its ballots.

        Only the call that performs the flip gets ``RevealStatus.REVEALED``;
        a concurrent caller observes ``ALREADY_REVEALED``.
        """
        async with self._store.session() as session:
            item = await db.get_item(session, reference)
            if item is None:
                return RevealStatus.NOT_STARTED
            if item.phase == Phase.REVEALED:
                return RevealStatus.ALREADY_REVEALED

            count = await db.count_ballots(session, reference)
            if count < item.ballot_threshold:
                logger.debug(
                    "Reveal of %s refused: %d/%d ballots", reference, count, item.ballot_threshold
                )
                return RevealStatus.THRESHOLD_NOT_MET

            if not await db.flip_item_to_revealed(session, reference):
                return RevealStatus.ALREADY_REVEALED
            revealed = await db.reveal_ballots(session, reference)

        logger.info("Revealed %s (%d ballots)", reference, revealed)
        return RevealStatus.REVEALED

    async def mark_posted(self, reference: str, external_ref: str) -> bool:
        """Record where the revealed summary was published. Set at most once."""
        if not external_ref:
            raise ValidationError("External reference is required")
        async with self._store.session() as session:
            posted = await db.mark_item_posted(session, reference, external_ref)
        if posted:
            logger.info("Summary for %s posted at %s", reference, external_ref)
        return posted

    async def is_posted(self, reference: str) -> bool:
        item = await self.get_item(reference)
        return bool(item and item.posted_summary_ref)

    async def recent_items(self, limit: int = 10) -> list[dict[str, Any]]:
        async with self._store.session() as session:
            return await db.get_recent_items(session, limit)


async def check_can_reveal(session: AsyncSession, reference: str) -> bool:
    """Phase is blinded and the ballot count has reached the stored threshold."""
    item = await db.get_item(session, reference)
    if item is not None and item.phase != Phase.BLINDED:
        return False
    threshold = item.ballot_threshold if item else DEFAULT_BALLOT_THRESHOLD
    return await db.count_ballots(session, reference) >= threshold
