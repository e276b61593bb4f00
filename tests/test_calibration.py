import pytest

from quorum.ballots import BallotManager
from quorum.calibration import (
    CalibrationDataPoint,
    CalibrationEngine,
    brier_score,
    calculate_metrics,
    calibration_curve,
    decision_aligned,
    format_calibration_chart,
    generate_insights,
    overconfidence_rate,
)
from quorum.db import ReviewStore
from quorum.outcomes import OutcomeTracker

RATIONALE = "Checked the rollout plan and the tests"


def _point(confidence: int, success: bool, decision: str = "approve") -> CalibrationDataPoint:
    return CalibrationDataPoint(
        item_ref="acme/api#1",
        confidence=confidence,
        decision=decision,
        outcome_type="merged_clean" if success else "bug_found",
        outcome_success=success,
    )


@pytest.fixture
def engine(store: ReviewStore) -> CalibrationEngine:
    return CalibrationEngine(store)


@pytest.fixture
def tracker(store: ReviewStore) -> OutcomeTracker:
    return OutcomeTracker(store)


@pytest.mark.parametrize(
    ("decision", "outcome_type", "expected"),
    [
        ("approve", "merged_clean", True),
        ("approve", "bug_found", False),
        ("approve", "followup_required", False),
        ("reject", "bug_found", True),
        ("reject", "reverted", True),
        ("reject", "merged_clean", False),
        ("neutral", "merged_clean", None),
        ("neutral", "reverted", None),
    ],
)
def test_decision_alignment(decision: str, outcome_type: str, expected: bool | None) -> None:
    assert decision_aligned(decision, outcome_type) is expected


def test_brier_score() -> None:
    assert brier_score([]) == 0.0
    assert brier_score([_point(5, True)]) == 0.0
    assert brier_score([_point(5, True), _point(4, False)]) == pytest.approx(0.32)


def test_overconfidence_rate() -> None:
    data = [_point(5, False), _point(4, True), _point(2, False), _point(4, False)]

    assert overconfidence_rate(data) == pytest.approx(0.5)
    assert overconfidence_rate([]) == 0.0


def test_calibration_curve_groups_by_confidence() -> None:
    data = [_point(4, True), _point(2, False), _point(4, False), _point(4, True)]

    curve = calibration_curve(data)

    assert [p.confidence for p in curve] == [2, 4]
    assert curve[0].actual_accuracy == 0.0
    assert curve[1].actual_accuracy == pytest.approx(2 / 3)
    assert curve[1].count == 3


def test_insights_without_data() -> None:
    assert generate_insights([])[0].startswith("No calibration data available")


def test_insights_flag_overconfidence() -> None:
    data = [_point(5, False) for _ in range(4)] + [_point(5, True)]

    insights = generate_insights(data)

    assert any(i.startswith("Poor calibration") for i in insights)
    assert any("Overconfident at confidence level 5" in i for i in insights)
    assert any("70%" in i for i in insights)
    assert any(i.startswith("Low overall accuracy") for i in insights)


def test_insights_for_well_calibrated_reviewer() -> None:
    data = [_point(5, True) for _ in range(10)]

    insights = generate_insights(data)

    assert insights[0].startswith("Excellent calibration")
    assert any(i.startswith("Strong overall accuracy (100%)") for i in insights)


def test_calculate_metrics_bundles_everything() -> None:
    data = [_point(5, True), _point(4, False)]

    metrics = calculate_metrics(data)

    assert metrics.total_predictions == 2
    assert metrics.overall_accuracy == 0.5
    assert metrics.brier_score == pytest.approx(0.32)
    assert metrics.overconfidence_rate == 0.5
    assert len(metrics.calibration_curve) == 2
    assert metrics.to_dict()["brier_score"] == 0.32


def test_format_calibration_chart() -> None:
    assert format_calibration_chart([]) == "No data to display"

    chart = format_calibration_chart(calibration_curve([_point(5, True), _point(5, False)]))

    assert chart.startswith("Calibration Chart (Confidence vs Accuracy)")
    assert "5 | " + "█" * 20 + " 50% (n=2)" in chart
    assert "expected: 100%" in chart


@pytest.mark.asyncio
async def test_calibration_data_alignment(
    ballots: BallotManager, engine: CalibrationEngine, tracker: OutcomeTracker
) -> None:
    await ballots.submit_ballot("clean", "approve", 5, RATIONALE)
    await ballots.submit_ballot("buggy", "approve", 3, RATIONALE)
    await tracker.record_outcome("clean", "merged_clean")
    await tracker.record_outcome("buggy", "bug_found")

    data = {p.item_ref: p for p in await engine.get_calibration_data()}

    assert data["clean"].outcome_success is True
    assert data["clean"].confidence == 5
    assert data["buggy"].outcome_success is False
    assert data["buggy"].outcome_type == "bug_found"


@pytest.mark.asyncio
async def test_neutral_ballots_never_appear(
    ballots: BallotManager, engine: CalibrationEngine, tracker: OutcomeTracker
) -> None:
    await ballots.submit_ballot("A", "neutral", 4, RATIONALE)
    await ballots.submit_ballot("B", "neutral", 4, RATIONALE)
    await tracker.record_outcome("A", "merged_clean")
    await tracker.record_outcome("B", "reverted")

    assert await engine.get_calibration_data() == []


@pytest.mark.asyncio
async def test_unconfirmed_outcome_counts_only_after_confirmation(
    ballots: BallotManager, engine: CalibrationEngine, tracker: OutcomeTracker
) -> None:
    await ballots.submit_ballot("A", "reject", 4, RATIONALE)
    outcome = await tracker.record_outcome("A", "bug_found", detected_auto=True)
    assert outcome.user_confirmed is False
    assert await engine.get_calibration_data() == []

    await tracker.confirm_outcome(outcome.id, True)

    data = await engine.get_calibration_data()
    assert len(data) == 1
    assert data[0].outcome_success is True


@pytest.mark.asyncio
async def test_each_ballot_uses_latest_confirmed_outcome(
    ballots: BallotManager, engine: CalibrationEngine, tracker: OutcomeTracker
) -> None:
    await ballots.submit_ballot("A", "approve", 4, RATIONALE)
    await tracker.record_outcome("A", "merged_clean")
    await tracker.record_outcome("A", "reverted")

    data = await engine.get_calibration_data()

    assert len(data) == 1
    assert data[0].outcome_type == "reverted"
    assert data[0].outcome_success is False


@pytest.mark.asyncio
async def test_calibration_data_newest_ballot_first(
    ballots: BallotManager, engine: CalibrationEngine, tracker: OutcomeTracker
) -> None:
    await ballots.submit_ballot("A", "approve", 2, RATIONALE, {"main_risk": "timeouts"})
    await ballots.submit_ballot("A", "approve", 5, RATIONALE)
    await tracker.record_outcome("A", "merged_clean")

    data = await engine.get_calibration_data()

    assert [p.confidence for p in data] == [5, 2]


@pytest.mark.asyncio
async def test_get_metrics(
    ballots: BallotManager, engine: CalibrationEngine, tracker: OutcomeTracker
) -> None:
    metrics = await engine.get_metrics()
    assert metrics.total_predictions == 0

    await ballots.submit_ballot("A", "approve", 5, RATIONALE)
    await tracker.record_outcome("A", "merged_clean")

    metrics = await engine.get_metrics()
    assert metrics.total_predictions == 1
    assert metrics.brier_score == 0.0
