"""
Quorum Review Workflow

This package provides a blind first-pass review workflow for proposed changes:
independent anonymous ballots, a threshold-gated reveal, outcome tracking with
confidence calibration, and retrospective analytics, backed by a local SQLite store.
"""

__version__ = "0.1.0"

# Ballots
from quorum.ballots import BallotManager, BallotSubmission, BallotValidation, validate_ballot

# Calibration
from quorum.calibration import (
    CalibrationDataPoint,
    CalibrationEngine,
    CalibrationMetrics,
    brier_score,
    overconfidence_rate,
)

# Configuration
from quorum.config import DEFAULT_BALLOT_THRESHOLD, Settings

# Storage
from quorum.db import ReviewStore, update_or_insert
from quorum.errors import (
    NotInitializedError,
    StateViolationError,
    StorageCorruptionError,
    ValidationError,
)

# Core models
from quorum.models import (
    Ballot,
    BiasPattern,
    Decision,
    DecisionScheme,
    Outcome,
    OutcomeType,
    Phase,
    Retrospective,
    ReviewedItem,
    SchemeType,
    TriggerType,
)
from quorum.outcomes import OutcomeTracker
from quorum.phase import PhaseController, RevealStatus
from quorum.reflection import ReflectionAnalytics, ReflectionInsight, ReflectionService
from quorum.schemes import DecisionSchemeRecorder

__all__ = [
    # Version
    "__version__",
    # Models
    "ReviewedItem",
    "Ballot",
    "Outcome",
    "DecisionScheme",
    "Retrospective",
    "Phase",
    "Decision",
    "OutcomeType",
    "SchemeType",
    "TriggerType",
    "BiasPattern",
    # Config
    "Settings",
    "DEFAULT_BALLOT_THRESHOLD",
    # Storage
    "ReviewStore",
    "update_or_insert",
    # Errors
    "ValidationError",
    "StateViolationError",
    "NotInitializedError",
    "StorageCorruptionError",
    # Workflow
    "BallotManager",
    "BallotSubmission",
    "BallotValidation",
    "validate_ballot",
    "PhaseController",
    "RevealStatus",
    "OutcomeTracker",
    # Calibration
    "CalibrationEngine",
    "CalibrationDataPoint",
    "CalibrationMetrics",
    "brier_score",
    "overconfidence_rate",
    # Reflection
    "DecisionSchemeRecorder",
    "ReflectionService",
    "ReflectionAnalytics",
    "ReflectionInsight",
]
