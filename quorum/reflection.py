"""
Retrospectives and team-level reflection analytics.

Pattern detection is heuristic: each detector needs a minimum amount of
history before it reports anything, and reports at most one insight.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from . import db
from .db import ReviewStore
from .errors import ValidationError
from .models import (
    BiasPattern,
    DecisionScheme,
    Retrospective,
    SchemeType,
    TriggerType,
    parse_bias_patterns,
    utcnow,
)

logger = logging.getLogger(__name__)

RISK_LEVELS = ("low", "medium", "high")

_BIAS_SUGGESTIONS = {
    BiasPattern.GROUPTHINK: (
        "Try using blinded reviews more consistently to reduce conformity pressure."
    ),
    BiasPattern.HIDDEN_PROFILE: (
        "Encourage reviewers to explicitly share unique information they hold."
    ),
    BiasPattern.STATUS_BIAS: "Emphasize evidence-based feedback over seniority or title.",
    BiasPattern.OVERCONFIDENCE: "Use confidence calibration to improve self-awareness.",
}
_DEFAULT_BIAS_SUGGESTION = "Consider process changes to address this recurring issue."

_SCHEME_FAILURE_ADVICE = {
    SchemeType.UNANIMOUS: (
        'Unanimous schemes can create pressure to conform. Try "consensus" instead to '
        "allow for respectful disagreement."
    ),
    SchemeType.MAJORITY: (
        "Majority voting may overlook important dissenting opinions. Consider "
        '"truth_wins" for technical decisions.'
    ),
}

_RECOMMENDATIONS = {
    "high": (
        SchemeType.TRUTH_WINS,
        "High-risk changes benefit from evidence-based decisions where technical "
        "correctness and proof matter most.",
    ),
    "medium": (
        SchemeType.MAJORITY,
        "Medium-risk changes work well with majority voting to balance thoroughness "
        "with efficiency.",
    ),
    "low": (
        SchemeType.CONSENSUS,
        "Low-risk changes can use consensus-based decisions to build team alignment.",
    ),
}

_INSIGHT_ICONS = {"warning": "⚠️", "recommendation": "💡", "info": "📊"}


class InsightType(StrEnum):
    WARNING = "warning"
    RECOMMENDATION = "recommendation"
    INFO = "info"


@dataclass
class ReflectionInsight:
    type: InsightType
    title: str
    description: str
    evidence: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "title": self.title,
            "description": self.description,
            "evidence": list(self.evidence),
        }


@dataclass
class ReflectionAnalytics:
    scheme_distribution: dict[str, int]
    total_retrospectives: int
    bias_frequency: dict[str, int]

    @property
    def total_schemes(self) -> int:
        return sum(self.scheme_distribution.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "scheme_distribution": dict(self.scheme_distribution),
            "total_retrospectives": self.total_retrospectives,
            "bias_frequency": dict(self.bias_frequency),
        }


@dataclass
class SchemeRecommendation:
    scheme: SchemeType
    reason: str


def normalize_bias_patterns(patterns: Iterable[str] | None) -> list[str]:
    """Validate bias tags and drop duplicates, keeping first-seen order."""
    valid = {b.value for b in BiasPattern}
    seen: list[str] = []
    for pattern in patterns or ():
        if pattern not in valid:
            raise ValidationError(
                f"Unknown bias pattern '{pattern}'. Expected one of: {', '.join(sorted(valid))}"
            )
        if pattern not in seen:
            seen.append(pattern)
    return seen


def count_bias_frequency(raw_rows: Iterable[str | None]) -> dict[str, int]:
    """Count tag occurrences across rows, skipping rows that do not parse."""
    frequency: Counter[str] = Counter()
    for raw in raw_rows:
        patterns = parse_bias_patterns(raw)
        if patterns is None:
            logger.debug("Skipping malformed bias patterns: %r", raw)
            continue
        frequency.update(patterns)
    return dict(frequency)


def _excerpt(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


class ReflectionService:
    """Stores retrospectives and looks for recurring process problems."""

    def __init__(self, store: ReviewStore) -> None:
        self._store = store

    async def record(
        self,
        item_ref: str,
        trigger_type: str,
        what_went_wrong: str,
        what_to_improve: str,
        bias_patterns: Iterable[str] | None = None,
    ) -> Retrospective:
        if not item_ref:
            raise ValidationError("Item reference is required")
        try:
            trigger = TriggerType(trigger_type)
        except ValueError:
            valid = ", ".join(t.value for t in TriggerType)
            raise ValidationError(f"Trigger type must be one of: {valid}") from None
        if not (what_went_wrong or "").strip() or not (what_to_improve or "").strip():
            raise ValidationError("What went wrong and what to improve are both required")
        patterns = normalize_bias_patterns(bias_patterns)

        async with self._store.session() as session:
            retro = await db.add_retrospective(
                session,
                item_ref,
                trigger.value,
                what_went_wrong.strip(),
                what_to_improve.strip(),
                json.dumps(patterns),
            )
        logger.info("Recorded %s retrospective for %s", trigger.value, item_ref)
        return retro

    async def query(
        self,
        item_ref: str | None = None,
        trigger_type: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Retrospective]:
        async with self._store.session() as session:
            return await db.query_retrospectives(
                session, item_ref=item_ref, trigger_type=trigger_type, start=start, end=end
            )

    async def get_analytics(self) -> ReflectionAnalytics:
        async with self._store.session() as session:
            distribution = await db.get_scheme_distribution(session)
            total = await db.count_retrospectives(session)
            raw_patterns = await db.get_raw_bias_patterns(session)
        return ReflectionAnalytics(
            scheme_distribution=distribution,
            total_retrospectives=total,
            bias_frequency=count_bias_frequency(raw_patterns),
        )

    async def detect_patterns(self) -> list[ReflectionInsight]:
        analytics = await self.get_analytics()
        async with self._store.session() as session:
            retros = await db.query_retrospectives(session)
            latest_schemes = await db.get_latest_schemes(session)

        detectors = (
            self._detect_lack_of_variation(analytics),
            self._detect_repeated_bias(analytics, retros),
            self._detect_scheme_failures(retros, latest_schemes),
            self._detect_overconfidence(retros),
        )
        return [insight for insight in detectors if insight is not None]

    def _detect_lack_of_variation(
        self, analytics: ReflectionAnalytics
    ) -> ReflectionInsight | None:
        total = analytics.total_schemes
        if total < 5:
            return None

        for scheme, count in analytics.scheme_distribution.items():
            percentage = count / total * 100
            if percentage > 70:
                return ReflectionInsight(
                    type=InsightType.RECOMMENDATION,
                    title="Decision Scheme Variation",
                    description=(
                        f'The team uses "{scheme}" for {percentage:.0f}% of decisions. '
                        "Consider varying decision rules with context (for example "
                        '"truth_wins" for technical changes, "consensus" for design decisions).'
                    ),
                    evidence=[
                        f"{count} out of {total} decisions used {scheme}",
                        "Vary schemes based on risk and complexity",
                    ],
                )
        return None

    def _detect_repeated_bias(
        self, analytics: ReflectionAnalytics, retros: Sequence[Retrospective]
    ) -> ReflectionInsight | None:
        total = len(retros)
        if total < 3:
            return None

        for bias, count in Counter(analytics.bias_frequency).most_common():
            percentage = count / total * 100
            if percentage <= 40 or count < 3:
                continue
            suggestion = _BIAS_SUGGESTIONS.get(bias, _DEFAULT_BIAS_SUGGESTION)
            evidence = [
                f"{r.item_ref}: {_excerpt(r.what_went_wrong)}"
                for r in retros
                if bias in r.bias_pattern_list
            ][:3]
            return ReflectionInsight(
                type=InsightType.WARNING,
                title=f"Recurring Bias Pattern: {bias}",
                description=(
                    f'"{bias}" was identified in {count} out of {total} retrospectives '
                    f"({percentage:.0f}%). {suggestion}"
                ),
                evidence=evidence,
            )
        return None

    def _detect_scheme_failures(
        self,
        retros: Sequence[Retrospective],
        latest_schemes: dict[str, DecisionScheme],
    ) -> ReflectionInsight | None:
        """An item with any retrospective counts as a bad outcome for its scheme."""
        retro_refs = {r.item_ref for r in retros}
        if len(retro_refs) < 5:
            return None

        usage: dict[str, list[int]] = {}
        for item_ref, scheme in latest_schemes.items():
            stats = usage.setdefault(scheme.scheme_type, [0, 0])
            stats[0] += 1
            if item_ref in retro_refs:
                stats[1] += 1

        for scheme, (total, bad) in usage.items():
            if total < 3:
                continue
            failure_rate = bad / total * 100
            if failure_rate <= 50:
                continue
            advice = _SCHEME_FAILURE_ADVICE.get(
                scheme, f'Review when and why "{scheme}" is being used.'
            )
            return ReflectionInsight(
                type=InsightType.WARNING,
                title=f"High Failure Rate for {scheme} Scheme",
                description=(
                    f'Items decided with "{scheme}" had issues {failure_rate:.0f}% of the time '
                    f"({bad} out of {total} uses). {advice}"
                ),
                evidence=[
                    f"{bad} retrospectives out of {total} uses",
                    "Consider whether this scheme fits the change",
                ],
            )
        return None

    def _detect_overconfidence(self, retros: Sequence[Retrospective]) -> ReflectionInsight | None:
        total = len(retros)
        if total < 3:
            return None

        flagged = [r for r in retros if BiasPattern.OVERCONFIDENCE in r.bias_pattern_list]
        rate = len(flagged) / total * 100
        if rate <= 30 or len(flagged) < 3:
            return None

        return ReflectionInsight(
            type=InsightType.WARNING,
            title="Overconfidence Pattern Detected",
            description=(
                f"{rate:.0f}% of retrospectives mention overconfidence "
                f"({len(flagged)} out of {total}). Reviewers may be overstating their certainty."
            ),
            evidence=[
                "Use confidence calibration",
                "Encourage reviewers to acknowledge uncertainty",
                'Use "truth_wins" to put evidence ahead of confidence',
            ],
        )

    def recommend_scheme(self, risk_level: str) -> SchemeRecommendation:
        if risk_level not in _RECOMMENDATIONS:
            raise ValidationError(f"Risk level must be one of: {', '.join(RISK_LEVELS)}")
        scheme, reason = _RECOMMENDATIONS[risk_level]
        return SchemeRecommendation(scheme=scheme, reason=reason)

    async def export_report(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> str:
        """Render retrospectives in a date range as a markdown report."""
        retros = await self.query(start=start, end=end)
        if not retros:
            return "# Reflection Report\n\nNo retrospectives found for the specified time period."

        analytics = await self.get_analytics()
        insights = await self.detect_patterns()

        lines = ["# Reflection Report", ""]

        if start or end:
            lines += ["## Time Period", ""]
            if start:
                lines.append(f"**From**: {start:%Y-%m-%d}")
            if end:
                lines.append(f"**To**: {end:%Y-%m-%d}")
            lines.append("")

        lines += [
            "## Summary",
            "",
            f"**Total Retrospectives**: {len(retros)}",
            f"**Decision Schemes Tracked**: {len(analytics.scheme_distribution)}",
            "",
            "## Decision Scheme Distribution",
            "",
        ]
        total_schemes = analytics.total_schemes
        for scheme, count in analytics.scheme_distribution.items():
            lines.append(f"- **{scheme}**: {count} ({count / total_schemes * 100:.1f}%)")
        lines.append("")

        if analytics.bias_frequency:
            lines += ["## Bias Patterns Identified", ""]
            for bias, count in analytics.bias_frequency.items():
                lines.append(f"- **{bias}**: {count} occurrences")
            lines.append("")

        if insights:
            lines += ["## Pattern Insights", ""]
            for insight in insights:
                lines += [
                    f"### {_INSIGHT_ICONS[insight.type.value]} {insight.title}",
                    "",
                    insight.description,
                    "",
                ]
                if insight.evidence:
                    lines.append("**Evidence**:")
                    lines += [f"- {e}" for e in insight.evidence]
                    lines.append("")

        lines += ["## Detailed Retrospectives", ""]
        for retro in retros:
            lines += [
                f"### {retro.item_ref}",
                "",
                f"**Date**: {retro.timestamp:%Y-%m-%d}",
                f"**Trigger**: {retro.trigger_type}",
                "",
                "**What Went Wrong**:",
                retro.what_went_wrong,
                "",
                "**What to Improve**:",
                retro.what_to_improve,
                "",
            ]
            patterns = retro.bias_pattern_list
            if patterns:
                lines.append("**Bias Patterns Noted**:")
                lines += [f"- {p}" for p in patterns]
                lines.append("")
            lines += ["---", ""]

        lines.append(f"*Generated on {utcnow():%Y-%m-%d}*")
        return "\n".join(lines) + "\n"
