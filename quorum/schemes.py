"""
Decision-scheme bookkeeping: which aggregation rule settled each item.
"""

from __future__ import annotations

import logging

from . import db
from .db import ReviewStore
from .errors import ValidationError
from .models import DecisionScheme, SchemeType

logger = logging.getLogger(__name__)


class DecisionSchemeRecorder:
    def __init__(self, store: ReviewStore) -> None:
        self._store = store

    async def record(
        self,
        item_ref: str,
        scheme_type: str,
        rationale: str,
        custom_name: str | None = None,
    ) -> DecisionScheme:
        """Record the scheme used for an item. Custom schemes must be named."""
        if not item_ref:
            raise ValidationError("Item reference is required")
        try:
            scheme = SchemeType(scheme_type)
        except ValueError:
            valid = ", ".join(s.value for s in SchemeType)
            raise ValidationError(f"Scheme type must be one of: {valid}") from None
        if not (rationale or "").strip():
            raise ValidationError("Rationale is required")
        custom_name = (custom_name or "").strip() or None
        if scheme == SchemeType.CUSTOM and custom_name is None:
            raise ValidationError("Custom name is required for custom decision schemes")

        async with self._store.session() as session:
            record = await db.add_decision_scheme(
                session, item_ref, scheme.value, rationale.strip(), custom_name
            )
        logger.info("Recorded %s decision scheme for %s", scheme.value, item_ref)
        return record

    async def get_latest(self, item_ref: str) -> DecisionScheme | None:
        async with self._store.session() as session:
            return await db.get_latest_decision_scheme(session, item_ref)
