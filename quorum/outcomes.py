"""
Post-merge outcome tracking.
"""

from __future__ import annotations

import logging
from typing import Any

from . import db
from .db import ReviewStore
from .errors import ValidationError
from .models import Outcome, OutcomeType, TriggerType

logger = logging.getLogger(__name__)

_RETROSPECTIVE_TRIGGERS = {
    OutcomeType.BUG_FOUND: TriggerType.AUTO_BUG_FOUND,
    OutcomeType.REVERTED: TriggerType.AUTO_REVERT,
}


def _check_outcome_type(outcome_type: str) -> str:
    try:
        return OutcomeType(outcome_type).value
    except ValueError:
        valid = ", ".join(o.value for o in OutcomeType)
        raise ValidationError(f"Outcome type must be one of: {valid}") from None


class OutcomeTracker:
    """Records what happened to an item after it was merged."""

    def __init__(self, store: ReviewStore) -> None:
        self._store = store

    async def record_outcome(
        self,
        item_ref: str,
        outcome_type: str,
        detected_auto: bool = False,
        details: dict[str, Any] | None = None,
    ) -> Outcome:
        """Store an outcome.

        Automatically detected outcomes start unconfirmed and do not count
        toward calibration until confirmed.
        """
        if not item_ref:
            raise ValidationError("Item reference is required")
        outcome_type = _check_outcome_type(outcome_type)

        async with self._store.session() as session:
            outcome = await db.add_outcome(session, item_ref, outcome_type, detected_auto, details)
        logger.info(
            "Recorded %s outcome for %s (auto=%s)", outcome_type, item_ref, detected_auto
        )
        return outcome

    async def confirm_outcome(
        self,
        outcome_id: int,
        confirmed: bool,
        new_outcome_type: str | None = None,
    ) -> Outcome:
        if new_outcome_type is not None:
            new_outcome_type = _check_outcome_type(new_outcome_type)

        async with self._store.session() as session:
            outcome = await db.get_outcome(session, outcome_id)
            if outcome is None:
                raise ValidationError(f"Outcome {outcome_id} not found")
            outcome.user_confirmed = confirmed
            if new_outcome_type is not None:
                outcome.outcome_type = new_outcome_type
            await session.flush()

        logger.info("Outcome %d confirmed=%s", outcome_id, confirmed)
        return outcome

    async def get_outcomes(self, item_ref: str) -> list[Outcome]:
        async with self._store.session() as session:
            return await db.get_outcomes(session, item_ref)

    async def should_trigger_retrospective(self, item_ref: str) -> bool:
        """True when the item has any bug-found or reverted outcome."""
        return await self.suggested_trigger(item_ref) is not None

    async def suggested_trigger(self, item_ref: str) -> TriggerType | None:
        for outcome in await self.get_outcomes(item_ref):
            trigger = _RETROSPECTIVE_TRIGGERS.get(OutcomeType(outcome.outcome_type))
            if trigger is not None:
                return trigger
        return None
