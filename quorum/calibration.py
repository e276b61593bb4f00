"""
Confidence calibration: how well stated ballot confidence tracked real outcomes.

Confidence on the 1-5 scale is read as a forecast probability of
``confidence / 5`` that the reviewer's decision will turn out right.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from . import db
from .config import MAX_CONFIDENCE
from .db import ReviewStore
from .models import Decision, Outcome, OutcomeType

HIGH_CONFIDENCE = 4
LOW_CONFIDENCE = 2
CHART_WIDTH = 40

_REJECT_VINDICATED = {OutcomeType.BUG_FOUND.value, OutcomeType.REVERTED.value}


@dataclass
class CalibrationDataPoint:
    item_ref: str
    confidence: int
    decision: str
    outcome_type: str
    outcome_success: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_ref": self.item_ref,
            "confidence": self.confidence,
            "decision": self.decision,
            "outcome_type": self.outcome_type,
            "outcome_success": self.outcome_success,
        }


@dataclass
class CalibrationCurvePoint:
    confidence: int
    actual_accuracy: float
    count: int

    @property
    def expected_accuracy(self) -> float:
        return self.confidence / MAX_CONFIDENCE


@dataclass
class CalibrationMetrics:
    brier_score: float
    total_predictions: int
    overall_accuracy: float
    overconfidence_rate: float
    calibration_curve: list[CalibrationCurvePoint] = field(default_factory=list)
    insights: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "brier_score": round(self.brier_score, 4),
            "total_predictions": self.total_predictions,
            "overall_accuracy": round(self.overall_accuracy, 4),
            "overconfidence_rate": round(self.overconfidence_rate, 4),
            "calibration_curve": [
                {
                    "confidence": p.confidence,
                    "actual_accuracy": round(p.actual_accuracy, 4),
                    "count": p.count,
                }
                for p in self.calibration_curve
            ],
            "insights": list(self.insights),
        }


def decision_aligned(decision: str, outcome_type: str) -> bool | None:
    """Whether an outcome vindicated a decision; None for neutral ballots."""
    if decision == Decision.APPROVE:
        return outcome_type == OutcomeType.MERGED_CLEAN
    if decision == Decision.REJECT:
        return outcome_type in _REJECT_VINDICATED
    return None


def brier_score(data: Sequence[CalibrationDataPoint]) -> float:
    """Mean squared error between forecast and outcome. 0 is perfect."""
    if not data:
        return 0.0
    total = 0.0
    for point in data:
        forecast = point.confidence / MAX_CONFIDENCE
        outcome = 1.0 if point.outcome_success else 0.0
        total += (forecast - outcome) ** 2
    return total / len(data)


def overconfidence_rate(data: Sequence[CalibrationDataPoint]) -> float:
    if not data:
        return 0.0
    misses = sum(1 for p in data if p.confidence >= HIGH_CONFIDENCE and not p.outcome_success)
    return misses / len(data)


def overall_accuracy(data: Sequence[CalibrationDataPoint]) -> float:
    if not data:
        return 0.0
    return sum(1 for p in data if p.outcome_success) / len(data)


def calibration_curve(data: Sequence[CalibrationDataPoint]) -> list[CalibrationCurvePoint]:
    """Actual accuracy per confidence level, sorted by confidence."""
    grouped: dict[int, list[bool]] = {}
    for point in data:
        grouped.setdefault(point.confidence, []).append(point.outcome_success)

    return [
        CalibrationCurvePoint(
            confidence=confidence,
            actual_accuracy=sum(outcomes) / len(outcomes),
            count=len(outcomes),
        )
        for confidence, outcomes in sorted(grouped.items())
    ]


def generate_insights(data: Sequence[CalibrationDataPoint]) -> list[str]:
    if not data:
        return [
            "No calibration data available. Submit ballots and record outcomes to build a profile."
        ]

    insights: list[str] = []
    if len(data) < 5:
        insights.append(
            f"Limited data ({len(data)} predictions). "
            "Insights become more reliable after 10+ predictions."
        )

    curve = calibration_curve(data)
    score = brier_score(data)
    accuracy = overall_accuracy(data)

    if score < 0.15:
        insights.append("Excellent calibration. Confidence levels align well with actual outcomes.")
    elif score < 0.25:
        insights.append("Good calibration. Minor adjustments could improve accuracy.")
    elif score < 0.35:
        insights.append("Moderate calibration. Consider reviewing how confidence is assessed.")
    else:
        insights.append("Poor calibration. Significant gap between confidence and accuracy.")

    for point in curve:
        diff = point.actual_accuracy - point.expected_accuracy
        if point.count < 3 or abs(diff) <= 0.2:
            continue
        pct = round(point.actual_accuracy * 100)
        if diff > 0:
            insights.append(
                f"Underconfident at confidence level {point.confidence}: "
                f"actual accuracy ({pct}%) exceeds expectations."
            )
        else:
            insights.append(
                f"Overconfident at confidence level {point.confidence}: "
                f"actual accuracy ({pct}%) is below expectations."
            )

    high = [p for p in curve if p.confidence >= HIGH_CONFIDENCE]
    high_count = sum(p.count for p in high)
    if high_count:
        high_accuracy = sum(p.actual_accuracy * p.count for p in high) / high_count
        if high_accuracy < 0.7:
            insights.append(
                "High-confidence predictions should be right more than 70% of the time. "
                "Consider pairing or an extra review when confidence is below 4."
            )

    low_count = sum(p.count for p in curve if p.confidence <= LOW_CONFIDENCE)
    if low_count > len(data) * 0.4:
        insights.append(
            f"{round(low_count / len(data) * 100)}% of predictions have low confidence (1-2). "
            "Consider building more context or deferring review."
        )

    if accuracy > 0.75:
        insights.append(
            f"Strong overall accuracy ({round(accuracy * 100)}%). "
            "Reviews generally align with outcomes."
        )
    elif accuracy < 0.5:
        insights.append(
            f"Low overall accuracy ({round(accuracy * 100)}%). "
            "Revisit decision criteria and seek feedback from teammates."
        )

    return insights


def calculate_metrics(data: Sequence[CalibrationDataPoint]) -> CalibrationMetrics:
    return CalibrationMetrics(
        brier_score=brier_score(data),
        total_predictions=len(data),
        overall_accuracy=overall_accuracy(data),
        overconfidence_rate=overconfidence_rate(data),
        calibration_curve=calibration_curve(data),
        insights=generate_insights(data),
    )


def format_calibration_chart(curve: Sequence[CalibrationCurvePoint]) -> str:
    """Render a curve as a plain-text bar chart."""
    if not curve:
        return "No data to display"

    lines = ["Calibration Chart (Confidence vs Accuracy)", ""]
    for point in curve:
        expected = point.expected_accuracy
        lines.append(
            f"{point.confidence} | {'█' * round(point.actual_accuracy * CHART_WIDTH)} "
            f"{round(point.actual_accuracy * 100)}% (n={point.count})"
        )
        lines.append(
            f"  | {'░' * round(expected * CHART_WIDTH)} expected: {round(expected * 100)}%"
        )
        lines.append("")
    return "\n".join(lines)


class CalibrationEngine:
    """Joins ballots with confirmed outcomes and scores them."""

    def __init__(self, store: ReviewStore) -> None:
        self._store = store

    async def get_calibration_data(self) -> list[CalibrationDataPoint]:
        """One data point per non-neutral ballot whose item has a confirmed outcome.

        Each ballot is scored against the most recent confirmed outcome of its
        item, so a corrected outcome replaces rather than adds to the record.
        Points are ordered newest ballot first.
        """
        async with self._store.session() as session:
            ballots = await db.get_all_ballots(session)
            outcomes = await db.get_confirmed_outcomes(session)

        # outcomes arrive newest first, keep the first seen per item
        latest: dict[str, Outcome] = {}
        for outcome in outcomes:
            latest.setdefault(outcome.item_ref, outcome)

        data: list[CalibrationDataPoint] = []
        for ballot in ballots:
            outcome = latest.get(ballot.reference)
            if outcome is None:
                continue
            success = decision_aligned(ballot.decision, outcome.outcome_type)
            if success is None:
                continue
            data.append(
                CalibrationDataPoint(
                    item_ref=ballot.reference,
                    confidence=ballot.confidence,
                    decision=ballot.decision,
                    outcome_type=outcome.outcome_type,
                    outcome_success=success,
                )
            )
        return data

    async def get_metrics(self) -> CalibrationMetrics:
        return calculate_metrics(await self.get_calibration_data())
