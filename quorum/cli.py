"""Main CLI entry point for quorum."""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .ballots import BallotManager
from .calibration import CalibrationEngine, format_calibration_chart
from .config import DEFAULT_BALLOT_THRESHOLD, SCHEMA_VERSION, settings
from .db import ReviewStore
from .errors import ValidationError
from .models import BiasPattern, Decision, OutcomeType, SchemeType, TriggerType
from .outcomes import OutcomeTracker
from .phase import PhaseController, RevealStatus
from .reflection import RISK_LEVELS, ReflectionService
from .schemes import DecisionSchemeRecorder

console = Console()

_REVEAL_MESSAGES = {
    RevealStatus.REVEALED: "[green]Ballots revealed[/green]",
    RevealStatus.ALREADY_REVEALED: "[yellow]Already revealed[/yellow]",
    RevealStatus.NOT_STARTED: "[red]No blinded review exists for this item[/red]",
    RevealStatus.THRESHOLD_NOT_MET: "[yellow]Not enough ballots to reveal yet[/yellow]",
}


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


@asynccontextmanager
async def open_store(db_path: Path) -> AsyncIterator[ReviewStore]:
    store = ReviewStore(db_path)
    await store.initialize()
    try:
        yield store
    finally:
        await store.dispose()


def _run(coro: Coroutine[Any, Any, None]) -> None:
    try:
        asyncio.run(coro)
    except ValidationError as exc:
        raise click.ClickException(str(exc)) from exc


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--db-path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="SQLite database file (defaults to QUORUM_DB_PATH or ~/.quorum/quorum.db)",
)
@click.option("--log-level", default=None, help="Logging level (defaults to QUORUM_LOG_LEVEL)")
@click.pass_context
def main(ctx: click.Context, db_path: Path | None, log_level: str | None) -> None:
    """Blind first-pass review workflow with calibration feedback.

    Reviewers submit independent ballots that stay hidden until enough exist,
    then outcomes and retrospectives feed calibration and team analytics.
    """
    configure_logging(log_level or settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path or settings.db_path


# =============================================================================
# Store Commands
# =============================================================================


@main.command(name="init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database schema."""

    async def do_init() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            version = await store.get_metadata("schema_version")
        console.print(f"[green]Schema ready[/green] at {ctx.obj['db_path']} (version {version})")

    _run(do_init())


@main.command(name="db-info")
@click.pass_context
def db_info(ctx: click.Context) -> None:
    """Show database location and schema version."""

    async def show_info() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            version = await store.get_metadata("schema_version")
        status = "[green]current[/green]" if version == SCHEMA_VERSION else "[red]mismatch[/red]"
        console.print(
            Panel(
                f"Path: {ctx.obj['db_path']}\n"
                f"Schema version: {version} ({status})\n"
                f"Strict language: {settings.strict_language}",
                title="Database Configuration",
            )
        )

    _run(show_info())


@main.command()
@click.confirmation_option(prompt="Delete every ballot, outcome and retrospective?")
@click.pass_context
def reset(ctx: click.Context) -> None:
    """Delete all stored data."""

    async def do_reset() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            await store.reset()
        console.print("[green]All data cleared[/green]")

    _run(do_reset())


# =============================================================================
# Review Commands
# =============================================================================


@main.command()
@click.argument("reference")
@click.option("--threshold", default=DEFAULT_BALLOT_THRESHOLD, help="Ballots needed to reveal")
@click.option("--deadline", type=click.DateTime(), default=None, help="First-pass deadline")
@click.pass_context
def init(ctx: click.Context, reference: str, threshold: int, deadline) -> None:
    """Start blinded review of an item.

    REFERENCE: Opaque item identifier (e.g., owner/repo#123)
    """

    async def do_init() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            item = await PhaseController(store).initialize(reference, threshold, deadline)
        console.print(
            f"[green]{reference}[/green] is [cyan]{item.phase}[/cyan] "
            f"(threshold {item.ballot_threshold})"
        )

    _run(do_init())


@main.command()
@click.argument("reference")
@click.option(
    "--decision", required=True, type=click.Choice([d.value for d in Decision]), help="Decision"
)
@click.option("--confidence", required=True, type=int, help="Confidence from 1 to 5")
@click.option("--rationale", required=True, help="Why you reached this decision")
@click.option("--main-risk", default=None, help="Main risk you see (asked for low confidence)")
@click.option("--strict", is_flag=True, help="Reject loaded language")
@click.pass_context
def ballot(
    ctx: click.Context,
    reference: str,
    decision: str,
    confidence: int,
    rationale: str,
    main_risk: str | None,
    strict: bool,
) -> None:
    """Submit a blind first-pass ballot."""

    async def do_submit() -> bool:
        nudges = {"main_risk": main_risk} if main_risk else None
        async with open_store(ctx.obj["db_path"]) as store:
            result = await BallotManager(store).submit_ballot(
                reference,
                decision,
                confidence,
                rationale,
                nudges,
                strict_language=True if strict else None,
            )

        for warning in result.warnings:
            console.print(f"[yellow]Warning:[/yellow] {warning}")
        if not result.success:
            for error in result.errors:
                console.print(f"[red]Error:[/red] {error}")
            return False

        console.print(f"[green]{result.message}[/green]")
        if result.ready_to_reveal:
            console.print(f"Threshold reached. Run: `quorum reveal {reference}`")
        return True

    if not asyncio.run(do_submit()):
        raise SystemExit(1)


@main.command()
@click.argument("reference")
@click.pass_context
def reveal(ctx: click.Context, reference: str) -> None:
    """Reveal all ballots of an item once the threshold is met."""

    async def do_reveal() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            outcome = await PhaseController(store).reveal(reference)
        console.print(_REVEAL_MESSAGES[outcome])

    _run(do_reveal())


@main.command()
@click.argument("reference")
@click.pass_context
def status(ctx: click.Context, reference: str) -> None:
    """Show the review state of an item."""

    async def show_status() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            phases = PhaseController(store)
            item = await phases.get_item(reference)
            if not item:
                console.print(f"[red]Item not found: {reference}[/red]")
                return
            can_reveal = await phases.can_reveal(reference)
            stats = await BallotManager(store, phases).get_ballot_stats(reference)
            scheme = await _latest_scheme_label(store, reference)

        distribution = ", ".join(
            f"{k}: {v}" for k, v in stats["decision_distribution"].items()
        )
        console.print(
            Panel(
                f"Phase: [cyan]{item.phase}[/cyan]\n"
                f"Ballots: {stats['total_ballots']}/{item.ballot_threshold}\n"
                f"Average confidence: {stats['average_confidence']}\n"
                f"Decisions: {distribution or '-'}\n"
                f"Can reveal: {'yes' if can_reveal else 'no'}\n"
                f"Deadline: {_fmt_time(item.first_pass_deadline)}\n"
                f"Posted: {item.posted_summary_ref or 'no'}\n"
                f"Decision scheme: {scheme or '-'}",
                title=f"Item: {reference}",
            )
        )

    _run(show_status())


async def _latest_scheme_label(store: ReviewStore, reference: str) -> str | None:
    scheme = await DecisionSchemeRecorder(store).get_latest(reference)
    if scheme is None:
        return None
    return scheme.custom_name or scheme.scheme_type


@main.command()
@click.argument("reference")
@click.pass_context
def ballots(ctx: click.Context, reference: str) -> None:
    """List ballots of an item (rationale hidden until reveal)."""

    async def list_all() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            rows = await BallotManager(store).list_ballots(reference)

        if not rows:
            console.print("[yellow]No ballots found[/yellow]")
            return

        table = Table(title=f"Ballots for {reference}")
        table.add_column("ID", style="cyan")
        table.add_column("Decision")
        table.add_column("Confidence")
        table.add_column("Author")
        table.add_column("Rationale")
        for row in rows:
            table.add_row(
                str(row["id"]),
                row["decision"],
                str(row["confidence"]),
                escape(row["author"]),
                escape(row["rationale"]),
            )
        console.print(table)

    _run(list_all())


@main.command()
@click.option("--limit", default=10, help="Number of items to show")
@click.pass_context
def recent(ctx: click.Context, limit: int) -> None:
    """List recently active items."""

    async def list_recent() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            items = await PhaseController(store).recent_items(limit)

        if not items:
            console.print("[yellow]No items found[/yellow]")
            return

        table = Table(title="Recent Items")
        table.add_column("Reference", style="cyan")
        table.add_column("Phase")
        table.add_column("Ballots")
        table.add_column("Last Activity")
        for item in items:
            table.add_row(
                item["reference"],
                item["phase"],
                str(item["ballot_count"]),
                _fmt_time(item["last_activity"]),
            )
        console.print(table)

    _run(list_recent())


@main.command(name="mark-posted")
@click.argument("reference")
@click.argument("external_ref")
@click.pass_context
def mark_posted(ctx: click.Context, reference: str, external_ref: str) -> None:
    """Record where the revealed summary was published."""

    async def do_mark() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            posted = await PhaseController(store).mark_posted(reference, external_ref)
        if posted:
            console.print(f"[green]Marked {reference} as posted[/green]")
        else:
            console.print(f"[yellow]{reference} was already posted or does not exist[/yellow]")

    _run(do_mark())


# =============================================================================
# Outcome & Calibration Commands
# =============================================================================


@main.command()
@click.argument("reference")
@click.option(
    "--type",
    "outcome_type",
    required=True,
    type=click.Choice([o.value for o in OutcomeType]),
    help="What happened after merge",
)
@click.option("--auto", "detected_auto", is_flag=True, help="Outcome was detected automatically")
@click.option("--details", default=None, help="Detection details as a JSON object")
@click.pass_context
def outcome(
    ctx: click.Context,
    reference: str,
    outcome_type: str,
    detected_auto: bool,
    details: str | None,
) -> None:
    """Record the post-merge outcome of an item."""
    try:
        parsed = json.loads(details) if details else None
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"not valid JSON: {exc}", param_hint="--details") from exc

    async def do_record() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            tracker = OutcomeTracker(store)
            recorded = await tracker.record_outcome(reference, outcome_type, detected_auto, parsed)
            trigger = await tracker.suggested_trigger(reference)
        state = "unconfirmed" if detected_auto else "confirmed"
        console.print(f"[green]Recorded outcome {recorded.id}[/green] ({outcome_type}, {state})")
        if trigger:
            console.print("Consider a retrospective:")
            console.print(f"  quorum retro {reference} --trigger {trigger}", highlight=False)

    _run(do_record())


@main.command()
@click.argument("outcome_id", type=int)
@click.option("--reject", is_flag=True, help="Mark the outcome as not confirmed")
@click.option(
    "--type",
    "new_type",
    default=None,
    type=click.Choice([o.value for o in OutcomeType]),
    help="Correct the outcome type",
)
@click.pass_context
def confirm(ctx: click.Context, outcome_id: int, reject: bool, new_type: str | None) -> None:
    """Confirm (or reject) an automatically detected outcome."""

    async def do_confirm() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            updated = await OutcomeTracker(store).confirm_outcome(outcome_id, not reject, new_type)
        console.print(
            f"Outcome {updated.id}: {updated.outcome_type} "
            f"({'confirmed' if updated.user_confirmed else 'unconfirmed'})"
        )

    _run(do_confirm())


@main.command()
@click.argument("reference")
@click.pass_context
def outcomes(ctx: click.Context, reference: str) -> None:
    """List outcomes of an item, newest first."""

    async def list_all() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            rows = await OutcomeTracker(store).get_outcomes(reference)

        if not rows:
            console.print("[yellow]No outcomes found[/yellow]")
            return

        table = Table(title=f"Outcomes for {reference}")
        table.add_column("ID", style="cyan")
        table.add_column("Type")
        table.add_column("Auto")
        table.add_column("Confirmed")
        table.add_column("Recorded")
        for row in rows:
            table.add_row(
                str(row.id),
                row.outcome_type,
                "yes" if row.detected_auto else "no",
                "yes" if row.user_confirmed else "no",
                _fmt_time(row.timestamp),
            )
        console.print(table)

    _run(list_all())


@main.command()
@click.option("--chart/--no-chart", default=True, help="Show the calibration chart")
@click.pass_context
def calibration(ctx: click.Context, chart: bool) -> None:
    """Show confidence calibration metrics."""

    async def show_metrics() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            metrics = await CalibrationEngine(store).get_metrics()

        console.print(
            Panel(
                f"Predictions: {metrics.total_predictions}\n"
                f"Brier score: {metrics.brier_score:.3f} (lower is better)\n"
                f"Accuracy: {metrics.overall_accuracy:.0%}\n"
                f"Overconfidence rate: {metrics.overconfidence_rate:.0%}",
                title="Calibration",
            )
        )
        if chart and metrics.calibration_curve:
            console.print(format_calibration_chart(metrics.calibration_curve), highlight=False)
        for insight in metrics.insights:
            console.print(f"- {insight}")

    _run(show_metrics())


# =============================================================================
# Reflection Commands
# =============================================================================


@main.command()
@click.argument("reference")
@click.option(
    "--type",
    "scheme_type",
    required=True,
    type=click.Choice([s.value for s in SchemeType]),
    help="Decision scheme used",
)
@click.option("--rationale", required=True, help="Why this scheme was chosen")
@click.option("--custom-name", default=None, help="Name of a custom scheme")
@click.pass_context
def scheme(
    ctx: click.Context,
    reference: str,
    scheme_type: str,
    rationale: str,
    custom_name: str | None,
) -> None:
    """Record the decision scheme used for an item."""

    async def do_record() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            await DecisionSchemeRecorder(store).record(
                reference, scheme_type, rationale, custom_name
            )
        console.print(f"[green]Recorded {scheme_type} scheme for {reference}[/green]")

    _run(do_record())


@main.command()
@click.argument("reference")
@click.option(
    "--trigger",
    default=None,
    type=click.Choice([t.value for t in TriggerType]),
    help="What triggered the retrospective (inferred from outcomes when omitted)",
)
@click.option("--wrong", "what_went_wrong", required=True, help="What went wrong")
@click.option("--improve", "what_to_improve", required=True, help="What to improve")
@click.option(
    "--bias",
    "biases",
    multiple=True,
    type=click.Choice([b.value for b in BiasPattern]),
    help="Bias pattern that contributed (repeatable)",
)
@click.pass_context
def retro(
    ctx: click.Context,
    reference: str,
    trigger: str | None,
    what_went_wrong: str,
    what_to_improve: str,
    biases: tuple[str, ...],
) -> None:
    """Record a retrospective for an item."""

    async def do_record() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            trigger_type = trigger or await OutcomeTracker(store).suggested_trigger(reference)
            recorded = await ReflectionService(store).record(
                reference,
                trigger_type or TriggerType.MANUAL,
                what_went_wrong,
                what_to_improve,
                biases,
            )
        console.print(
            f"[green]Recorded retrospective {recorded.id}[/green] ({recorded.trigger_type})"
        )

    _run(do_record())


@main.command()
@click.option("--ref", "item_ref", default=None, help="Filter by item reference")
@click.option(
    "--trigger", default=None, type=click.Choice([t.value for t in TriggerType]), help="Trigger"
)
@click.option("--since", type=click.DateTime(), default=None, help="Earliest date")
@click.option("--until", type=click.DateTime(), default=None, help="Latest date")
@click.pass_context
def retros(ctx: click.Context, item_ref: str | None, trigger: str | None, since, until) -> None:
    """List retrospectives, newest first."""

    async def list_all() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            rows = await ReflectionService(store).query(item_ref, trigger, since, until)

        if not rows:
            console.print("[yellow]No retrospectives found[/yellow]")
            return

        table = Table(title="Retrospectives")
        table.add_column("ID", style="cyan")
        table.add_column("Item")
        table.add_column("Trigger")
        table.add_column("Biases")
        table.add_column("What Went Wrong")
        table.add_column("Date")
        for row in rows:
            wrong = row.what_went_wrong
            table.add_row(
                str(row.id),
                row.item_ref,
                row.trigger_type,
                ", ".join(row.bias_pattern_list) or "-",
                escape(wrong[:40] + "..." if len(wrong) > 40 else wrong),
                _fmt_time(row.timestamp),
            )
        console.print(table)

    _run(list_all())


@main.command()
@click.pass_context
def analytics(ctx: click.Context) -> None:
    """Show decision-scheme and bias-pattern counts."""

    async def show() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            data = await ReflectionService(store).get_analytics()

        console.print(f"Total retrospectives: {data.total_retrospectives}")
        for title, counts in (
            ("Decision Schemes", data.scheme_distribution),
            ("Bias Patterns", data.bias_frequency),
        ):
            table = Table(title=title)
            table.add_column("Name", style="cyan")
            table.add_column("Count")
            for name, count in sorted(counts.items(), key=lambda kv: kv[1], reverse=True):
                table.add_row(name, str(count))
            console.print(table)

    _run(show())


@main.command()
@click.pass_context
def insights(ctx: click.Context) -> None:
    """Detect recurring process problems."""

    async def show() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            found = await ReflectionService(store).detect_patterns()

        if not found:
            console.print("[green]No patterns detected[/green]")
            return
        for insight in found:
            style = "yellow" if insight.type == "warning" else "cyan"
            body = insight.description
            if insight.evidence:
                body += "\n\n" + "\n".join(f"- {e}" for e in insight.evidence)
            console.print(Panel(body, title=insight.title, border_style=style))

    _run(show())


@main.command()
@click.option("--since", type=click.DateTime(), default=None, help="Earliest date")
@click.option("--until", type=click.DateTime(), default=None, help="Latest date")
@click.option(
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the markdown report to a file",
)
@click.pass_context
def report(ctx: click.Context, since, until, output: Path | None) -> None:
    """Export retrospectives as a markdown report."""

    async def do_export() -> None:
        async with open_store(ctx.obj["db_path"]) as store:
            text = await ReflectionService(store).export_report(since, until)
        if output:
            output.write_text(text, encoding="utf-8")
            console.print(f"[green]Report written to {output}[/green]")
        else:
            click.echo(text)

    _run(do_export())


@main.command()
@click.argument("risk_level", type=click.Choice(list(RISK_LEVELS)))
@click.pass_context
def recommend(ctx: click.Context, risk_level: str) -> None:
    """Recommend a decision scheme for a risk level."""
    suggestion = ReflectionService(ReviewStore(ctx.obj["db_path"])).recommend_scheme(risk_level)
    console.print(f"[cyan]{suggestion.scheme}[/cyan]: {suggestion.reason}")


if __name__ == "__main__":
    main()
