"""SQLAlchemy models for the review workflow database."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .config import DEFAULT_BALLOT_THRESHOLD


def utcnow() -> datetime:
    return datetime.now(UTC)


class Phase(StrEnum):
    BLINDED = "blinded"
    REVEALED = "revealed"


class Decision(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"
    NEUTRAL = "neutral"


class OutcomeType(StrEnum):
    MERGED_CLEAN = "merged_clean"
    BUG_FOUND = "bug_found"
    REVERTED = "reverted"
    FOLLOWUP_REQUIRED = "followup_required"


class SchemeType(StrEnum):
    CONSENSUS = "consensus"
    TRUTH_WINS = "truth_wins"
    MAJORITY = "majority"
    EXPERT_VETO = "expert_veto"
    UNANIMOUS = "unanimous"
    CUSTOM = "custom"


class TriggerType(StrEnum):
    MANUAL = "manual"
    AUTO_BUG_FOUND = "auto_bug_found"
    AUTO_REVERT = "auto_revert"


class BiasPattern(StrEnum):
    GROUPTHINK = "groupthink"
    HIDDEN_PROFILE = "hidden_profile"
    STATUS_BIAS = "status_bias"
    OVERCONFIDENCE = "overconfidence"
    OTHER = "other"


def _check_in(column: str, enum: type[StrEnum]) -> CheckConstraint:
    values = ", ".join(f"'{member.value}'" for member in enum)
    return CheckConstraint(f"{column} IN ({values})", name=f"ck_{column}_values")


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSON,
    }


# =============================================================================
# REVIEW WORKFLOW TABLES
# =============================================================================


class ReviewedItem(Base):
    """Workflow state of one reviewed change, keyed by its reference string."""

    __tablename__ = "reviewed_items"

    reference: Mapped[str] = mapped_column(String, primary_key=True)
    phase: Mapped[str] = mapped_column(String, nullable=False, default=Phase.BLINDED.value)
    ballot_threshold: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_BALLOT_THRESHOLD
    )
    first_pass_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    posted_summary_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        _check_in("phase", Phase),
        CheckConstraint("ballot_threshold >= 1", name="ck_ballot_threshold_positive"),
    )


class Ballot(Base):
    """Independent reviewer judgment, blind until the item is revealed."""

    __tablename__ = "ballots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reference: Mapped[str] = mapped_column(
        String, ForeignKey("reviewed_items.reference"), nullable=False, index=True
    )
    decision: Mapped[str] = mapped_column(String, nullable=False)
    confidence: Mapped[int] = mapped_column(Integer, nullable=False)
    rationale: Mapped[str] = mapped_column(Text, nullable=False)
    author_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    nudge_responses: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    revealed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        _check_in("decision", Decision),
        CheckConstraint("confidence BETWEEN 1 AND 5", name="ck_confidence_range"),
    )


class Outcome(Base):
    """Post-merge result of a reviewed change."""

    __tablename__ = "outcomes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_ref: Mapped[str] = mapped_column(String, nullable=False, index=True)
    outcome_type: Mapped[str] = mapped_column(String, nullable=False)
    detected_auto: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    user_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    detection_details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (_check_in("outcome_type", OutcomeType),)


class DecisionScheme(Base):
    """Aggregation rule chosen to turn the ballots into one decision."""

    __tablename__ = "decision_schemes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_ref: Mapped[str] = mapped_column(String, nullable=False, index=True)
    scheme_type: Mapped[str] = mapped_column(String, nullable=False)
    rationale: Mapped[str] = mapped_column(Text, nullable=False)
    custom_name: Mapped[str | None] = mapped_column(String, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (_check_in("scheme_type", SchemeType),)


class Retrospective(Base):
    """Post-mortem on a reviewed change."""

    __tablename__ = "retrospectives"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_ref: Mapped[str] = mapped_column(String, nullable=False, index=True)
    trigger_type: Mapped[str] = mapped_column(String, nullable=False)
    what_went_wrong: Mapped[str] = mapped_column(Text, nullable=False)
    what_to_improve: Mapped[str] = mapped_column(Text, nullable=False)
    # JSON array kept as text so one malformed row cannot break a whole read
    bias_patterns: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (_check_in("trigger_type", TriggerType),)

    @property
    def bias_pattern_list(self) -> list[str]:
        return parse_bias_patterns(self.bias_patterns) or []


def parse_bias_patterns(raw: str | None) -> list[str] | None:
    """Decode a stored bias-pattern array; None when the data is malformed."""
    if raw is None:
        return None
    try:
        patterns = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(patterns, list):
        return None
    return [p for p in patterns if isinstance(p, str)]


# =============================================================================
# STORE TABLES
# =============================================================================


class StoreMetadata(Base):
    """Generic key-value slot."""

    __tablename__ = "store_metadata"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
