"""
Independent first-pass ballots and their validation.
"""

from __future__ import annotations

import logging
import re
import secrets
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, cast

from . import db
from .config import (
    LOW_CONFIDENCE_NUDGE_BELOW,
    MAX_CONFIDENCE,
    MIN_CONFIDENCE,
    MIN_RATIONALE_LENGTH,
    settings,
)
from .db import ReviewStore
from .errors import StateViolationError, ValidationError
from .models import Ballot, Decision, Phase
from .phase import PhaseController, RevealStatus, check_can_reveal

logger = logging.getLogger(__name__)

BIASED_LANGUAGE_PATTERNS = (
    re.compile(r"\b(obviously|clearly|simple|trivial|just|easy)\b", re.IGNORECASE),
    re.compile(r"\b(stupid|dumb|idiotic|ridiculous)\b", re.IGNORECASE),
)

MISSING_FIELDS_MESSAGE = (
    "Missing required fields: reference, decision, confidence, and rationale are required"
)
CONFIDENCE_RANGE_MESSAGE = f"Confidence must be between {MIN_CONFIDENCE} and {MAX_CONFIDENCE}"
RATIONALE_LENGTH_MESSAGE = f"Rationale must be at least {MIN_RATIONALE_LENGTH} characters long"
OBJECTIVE_LANGUAGE_MESSAGE = "Consider using more objective language in your rationale"
LOW_CONFIDENCE_RISK_MESSAGE = "Low-confidence ballots should name the main risk"
REVEALED_PHASE_MESSAGE = "Item is already revealed; ballots can only be submitted while blinded"

HIDDEN_RATIONALE = "[Hidden until reveal]"
ANONYMOUS_AUTHOR = "[Anonymous]"


@dataclass
class BallotValidation:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        if self.errors:
            raise ValidationError(self.errors[0], self.errors)


@dataclass
class BallotSubmission:
    """Outcome of a ballot submission. Failures are values, not exceptions."""

    success: bool
    message: str
    ballot: Ballot | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    ready_to_reveal: bool = False
    phase_violation: bool = False

    def raise_for_error(self) -> None:
        if self.success:
            return
        if self.phase_violation:
            raise StateViolationError(self.message)
        raise ValidationError(self.message, self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "ballot_id": self.ballot.id if self.ballot else None,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "ready_to_reveal": self.ready_to_reveal,
        }


def uses_biased_language(rationale: str) -> bool:
    return any(pattern.search(rationale) for pattern in BIASED_LANGUAGE_PATTERNS)


def validate_ballot(
    reference: str | None,
    decision: str | None,
    confidence: Any,
    rationale: str | None,
    nudge_responses: dict[str, Any] | None = None,
    *,
    strict_language: bool = False,
) -> BallotValidation:
    """Check a ballot before it is stored.

    Missing fields short-circuit the remaining checks. Loaded language is a
    warning unless ``strict_language`` is set, in which case it is an error.
    """
    result = BallotValidation()

    if not reference or not decision or confidence is None or not (rationale or "").strip():
        result.errors.append(MISSING_FIELDS_MESSAGE)
        return result
    rationale = cast(str, rationale)

    valid_decisions = [d.value for d in Decision]
    if decision not in valid_decisions:
        result.errors.append(f"Decision must be one of: {', '.join(valid_decisions)}")

    if (
        isinstance(confidence, bool)
        or not isinstance(confidence, int)
        or not MIN_CONFIDENCE <= confidence <= MAX_CONFIDENCE
    ):
        result.errors.append(CONFIDENCE_RANGE_MESSAGE)

    if len(rationale.strip()) < MIN_RATIONALE_LENGTH:
        result.errors.append(RATIONALE_LENGTH_MESSAGE)

    if uses_biased_language(rationale):
        if strict_language:
            result.errors.append(OBJECTIVE_LANGUAGE_MESSAGE)
        else:
            result.warnings.append(OBJECTIVE_LANGUAGE_MESSAGE)

    if (
        isinstance(confidence, int)
        and confidence < LOW_CONFIDENCE_NUDGE_BELOW
        and not (nudge_responses or {}).get("main_risk")
    ):
        result.warnings.append(LOW_CONFIDENCE_RISK_MESSAGE)

    return result


def generate_anonymous_id() -> str:
    return f"anon-{secrets.token_hex(4)}"


def export_ballot(ballot: Ballot) -> dict[str, Any]:
    """Privacy-safe view of a ballot; rationale and author stay hidden until reveal."""
    data: dict[str, Any] = {
        "id": ballot.id,
        "reference": ballot.reference,
        "decision": ballot.decision,
        "confidence": ballot.confidence,
        "created_at": ballot.created_at.isoformat() if ballot.created_at else None,
        "revealed": ballot.revealed,
    }
    if ballot.revealed:
        data["rationale"] = ballot.rationale
        data["author"] = (ballot.author_metadata or {}).get("anonymous_id", ANONYMOUS_AUTHOR)
    else:
        data["rationale"] = HIDDEN_RATIONALE
        data["author"] = ANONYMOUS_AUTHOR
    return data


class BallotManager:
    """Accepts ballots while an item is blinded."""

    def __init__(self, store: ReviewStore, phases: PhaseController | None = None) -> None:
        self._store = store
        self._phases = phases or PhaseController(store)

    async def submit_ballot(
        self,
        reference: str,
        decision: str,
        confidence: int,
        rationale: str,
        nudge_responses: dict[str, Any] | None = None,
        *,
        author_metadata: dict[str, Any] | None = None,
        strict_language: bool | None = None,
    ) -> BallotSubmission:
        strict = settings.strict_language if strict_language is None else strict_language
        validation = validate_ballot(
            reference,
            decision,
            confidence,
            rationale,
            nudge_responses,
            strict_language=strict,
        )
        if not validation.is_valid:
            return BallotSubmission(
                success=False,
                message=validation.errors[0],
                errors=validation.errors,
                warnings=validation.warnings,
            )

        async with self._store.session() as session:
            item = await db.get_item(session, reference)
            if item is not None and item.phase != Phase.BLINDED:
                logger.info("Rejected ballot for %s: item is %s", reference, item.phase)
                return BallotSubmission(
                    success=False,
                    message=REVEALED_PHASE_MESSAGE,
                    errors=[REVEALED_PHASE_MESSAGE],
                    warnings=validation.warnings,
                    phase_violation=True,
                )
            if item is None:
                await db.ensure_item(session, reference)

            metadata = {**(author_metadata or {}), "anonymous_id": generate_anonymous_id()}
            ballot = await db.add_ballot(
                session,
                reference=reference,
                decision=decision,
                confidence=confidence,
                rationale=rationale.strip(),
                author_metadata=metadata,
                nudge_responses=nudge_responses,
            )
            ready = await check_can_reveal(session, reference)

        logger.info("Ballot %d submitted for %s", ballot.id, reference)
        return BallotSubmission(
            success=True,
            message="First-pass review submitted. Author identity is hidden until reveal.",
            ballot=ballot,
            warnings=validation.warnings,
            ready_to_reveal=ready,
        )

    async def reveal(self, reference: str) -> RevealStatus:
        return await self._phases.reveal(reference)

    async def get_ballots(self, reference: str) -> list[Ballot]:
        async with self._store.session() as session:
            return await db.get_ballots(session, reference)

    async def list_ballots(self, reference: str) -> list[dict[str, Any]]:
        return [export_ballot(b) for b in await self.get_ballots(reference)]

    async def get_ballot_stats(self, reference: str) -> dict[str, Any]:
        """Aggregate view of an item's ballots without any identities."""
        ballots = await self.get_ballots(reference)
        if not ballots:
            return {"total_ballots": 0, "average_confidence": 0.0, "decision_distribution": {}}

        return {
            "total_ballots": len(ballots),
            "average_confidence": round(sum(b.confidence for b in ballots) / len(ballots), 2),
            "decision_distribution": dict(Counter(b.decision for b in ballots)),
        }
