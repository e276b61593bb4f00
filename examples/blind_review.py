"""
Blind Review Example

Walks one change through the full workflow: three independent ballots,
the reveal, a post-merge outcome, and the resulting calibration metrics.

Usage:
    python examples/blind_review.py
"""

import asyncio
import tempfile
from pathlib import Path

from rich.console import Console
from rich.table import Table

from quorum import (
    BallotManager,
    CalibrationEngine,
    OutcomeTracker,
    PhaseController,
    ReviewStore,
)
from quorum.calibration import format_calibration_chart

console = Console()

REFERENCE = "acme/payments#412"


async def main() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        store = ReviewStore(Path(tmp) / "example.db")
        await store.initialize()
        try:
            await run_workflow(store)
        finally:
            await store.dispose()


async def run_workflow(store: ReviewStore) -> None:
    phases = PhaseController(store)
    ballots = BallotManager(store, phases)

    await phases.initialize(REFERENCE, threshold=3)
    console.print(f"[bold]Blinded review started for {REFERENCE}[/bold]")

    submissions = [
        ("approve", 4, "Retry logic is covered by the new integration tests."),
        ("reject", 2, "Idempotency key is not persisted before the charge call."),
        ("approve", 5, "Change is isolated behind the existing feature flag."),
    ]
    for decision, confidence, rationale in submissions:
        result = await ballots.submit_ballot(
            REFERENCE,
            decision,
            confidence,
            rationale,
            {"main_risk": "duplicate charges"} if confidence < 3 else None,
        )
        console.print(f"  {decision} ({confidence}): ready_to_reveal={result.ready_to_reveal}")

    console.print(f"Before reveal: {await ballots.list_ballots(REFERENCE)}")
    console.print(f"Reveal: [green]{await phases.reveal(REFERENCE)}[/green]")

    table = Table(title="Revealed Ballots")
    table.add_column("Decision")
    table.add_column("Confidence")
    table.add_column("Rationale")
    for row in await ballots.list_ballots(REFERENCE):
        table.add_row(row["decision"], str(row["confidence"]), row["rationale"])
    console.print(table)

    await OutcomeTracker(store).record_outcome(REFERENCE, "bug_found", detected_auto=False)

    metrics = await CalibrationEngine(store).get_metrics()
    console.print(f"Brier score: {metrics.brier_score:.3f}")
    console.print(format_calibration_chart(metrics.calibration_curve))
    for insight in metrics.insights:
        console.print(f"- {insight}")


if __name__ == "__main__":
    asyncio.run(main())
