from datetime import UTC, datetime, timedelta

import pytest

from quorum.db import ReviewStore
from quorum.errors import ValidationError
from quorum.models import Retrospective, SchemeType
from quorum.reflection import (
    InsightType,
    ReflectionService,
    count_bias_frequency,
    normalize_bias_patterns,
)
from quorum.schemes import DecisionSchemeRecorder

WRONG = "Null handling in the importer was missed"
IMPROVE = "Add a fixture with empty rows"


@pytest.fixture
def reflection(store: ReviewStore) -> ReflectionService:
    return ReflectionService(store)


@pytest.fixture
def recorder(store: ReviewStore) -> DecisionSchemeRecorder:
    return DecisionSchemeRecorder(store)


def _titles(insights) -> set[str]:
    return {i.title for i in insights}


def test_normalize_bias_patterns_dedupes_in_order() -> None:
    assert normalize_bias_patterns(["groupthink", "status_bias", "groupthink"]) == [
        "groupthink",
        "status_bias",
    ]
    assert normalize_bias_patterns(None) == []


def test_normalize_bias_patterns_rejects_unknown_tag() -> None:
    with pytest.raises(ValidationError, match="anchoring"):
        normalize_bias_patterns(["anchoring"])


def test_count_bias_frequency_skips_malformed_rows() -> None:
    rows = ['["groupthink", "overconfidence"]', "not json", '{"a": 1}', None, '["groupthink"]']

    assert count_bias_frequency(rows) == {"groupthink": 2, "overconfidence": 1}


@pytest.mark.asyncio
async def test_record_stores_deduplicated_patterns(reflection: ReflectionService) -> None:
    retro = await reflection.record(
        "A", "manual", WRONG, IMPROVE, ["overconfidence", "groupthink", "overconfidence"]
    )

    assert retro.bias_pattern_list == ["overconfidence", "groupthink"]


@pytest.mark.asyncio
async def test_record_validates_input(reflection: ReflectionService) -> None:
    with pytest.raises(ValidationError):
        await reflection.record("A", "scheduled", WRONG, IMPROVE)
    with pytest.raises(ValidationError):
        await reflection.record("A", "manual", "", IMPROVE)
    with pytest.raises(ValidationError):
        await reflection.record("A", "manual", WRONG, "  ")


@pytest.mark.asyncio
async def test_query_filters_and_order(reflection: ReflectionService) -> None:
    first = await reflection.record("A", "manual", WRONG, IMPROVE)
    second = await reflection.record("A", "auto_bug_found", WRONG, IMPROVE)
    third = await reflection.record("B", "auto_revert", WRONG, IMPROVE)

    assert [r.id for r in await reflection.query()] == [third.id, second.id, first.id]
    assert [r.id for r in await reflection.query(item_ref="A")] == [second.id, first.id]
    assert [r.id for r in await reflection.query(trigger_type="auto_revert")] == [third.id]

    now = datetime.now(UTC)
    assert len(await reflection.query(start=now - timedelta(hours=1))) == 3
    assert await reflection.query(start=now + timedelta(hours=1)) == []
    assert await reflection.query(end=now - timedelta(hours=1)) == []


@pytest.mark.asyncio
async def test_analytics_skip_malformed_bias_data(
    store: ReviewStore, reflection: ReflectionService, recorder: DecisionSchemeRecorder
) -> None:
    await recorder.record("A", "majority", "Routine change")
    await recorder.record("B", "majority", "Routine change")
    await recorder.record("C", "truth_wins", "Benchmarks decided")
    await reflection.record("A", "manual", WRONG, IMPROVE, ["groupthink"])
    async with store.session() as session:
        session.add(
            Retrospective(
                item_ref="legacy",
                trigger_type="manual",
                what_went_wrong=WRONG,
                what_to_improve=IMPROVE,
                bias_patterns="{broken",
            )
        )

    analytics = await reflection.get_analytics()

    assert analytics.scheme_distribution == {"majority": 2, "truth_wins": 1}
    assert analytics.total_retrospectives == 2
    assert analytics.bias_frequency == {"groupthink": 1}


@pytest.mark.asyncio
async def test_detect_patterns_needs_history(reflection: ReflectionService) -> None:
    await reflection.record("A", "manual", WRONG, IMPROVE, ["groupthink"])

    assert await reflection.detect_patterns() == []


@pytest.mark.asyncio
async def test_detect_lack_of_scheme_variation(
    reflection: ReflectionService, recorder: DecisionSchemeRecorder
) -> None:
    for i in range(4):
        await recorder.record(f"item-{i}", "majority", "Routine change")
    await recorder.record("item-4", "consensus", "Design discussion")

    insights = await reflection.detect_patterns()

    assert len(insights) == 1
    assert insights[0].type == InsightType.RECOMMENDATION
    assert insights[0].title == "Decision Scheme Variation"
    assert "80%" in insights[0].description


@pytest.mark.asyncio
async def test_detect_recurring_bias_and_overconfidence(reflection: ReflectionService) -> None:
    for i in range(3):
        await reflection.record(f"item-{i}", "manual", WRONG, IMPROVE, ["overconfidence"])
    await reflection.record("item-3", "manual", WRONG, IMPROVE, ["status_bias"])

    insights = await reflection.detect_patterns()

    assert _titles(insights) == {
        "Recurring Bias Pattern: overconfidence",
        "Overconfidence Pattern Detected",
    }
    recurring = next(i for i in insights if i.title.startswith("Recurring"))
    assert "3 out of 4" in recurring.description
    assert len(recurring.evidence) == 3
    assert recurring.evidence[0].startswith("item-")


@pytest.mark.asyncio
async def test_detect_scheme_failure_rate(
    reflection: ReflectionService, recorder: DecisionSchemeRecorder
) -> None:
    for i in range(5):
        ref = f"item-{i}"
        scheme = "unanimous" if i < 3 else "truth_wins"
        await recorder.record(ref, scheme, "Chosen by the team")
        await reflection.record(ref, "auto_bug_found", WRONG, IMPROVE)

    insights = await reflection.detect_patterns()

    failure = next(i for i in insights if i.title.startswith("High Failure Rate"))
    assert failure.title == "High Failure Rate for unanimous Scheme"
    assert "3 out of 3 uses" in failure.description
    assert "consensus" in failure.description


def test_recommend_scheme(reflection: ReflectionService) -> None:
    assert reflection.recommend_scheme("high").scheme == SchemeType.TRUTH_WINS
    assert reflection.recommend_scheme("medium").scheme == SchemeType.MAJORITY
    assert reflection.recommend_scheme("low").scheme == SchemeType.CONSENSUS
    with pytest.raises(ValidationError):
        reflection.recommend_scheme("extreme")


@pytest.mark.asyncio
async def test_export_report_without_retrospectives(reflection: ReflectionService) -> None:
    report = await reflection.export_report()

    assert report.startswith("# Reflection Report")
    assert "No retrospectives found" in report


@pytest.mark.asyncio
async def test_export_report_contents(
    reflection: ReflectionService, recorder: DecisionSchemeRecorder
) -> None:
    await recorder.record("acme/api#9", "majority", "Routine change")
    await reflection.record("acme/api#9", "auto_revert", WRONG, IMPROVE, ["groupthink"])

    start = datetime.now(UTC) - timedelta(days=1)
    report = await reflection.export_report(start=start)

    assert "## Time Period" in report
    assert f"**From**: {start:%Y-%m-%d}" in report
    assert "**Total Retrospectives**: 1" in report
    assert "- **majority**: 1 (100.0%)" in report
    assert "- **groupthink**: 1 occurrences" in report
    assert "### acme/api#9" in report
    assert WRONG in report
    assert "**Bias Patterns Noted**:\n- groupthink" in report
    assert report.rstrip().endswith("*")
