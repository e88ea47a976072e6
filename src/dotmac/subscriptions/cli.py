#!/usr/bin/env python
"""
CLI for running and inspecting the billing jobs.
"""

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime

import click

from dotmac.subscriptions.logging import setup_logging
from dotmac.subscriptions.recurring import RecurringJobRunner
from dotmac.subscriptions.runtime import BillingRuntime, create_runtime
from dotmac.subscriptions.scheduler import JobName

JOB_ALIASES: dict[str, JobName] = {
    "daily-billing": JobName.DAILY_BILLING,
    "retry-payments": JobName.RETRY_FAILED_PAYMENTS,
    "grace-sweep": JobName.EXPIRED_GRACE_PERIOD,
}


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    runtime_factory: Callable[[], BillingRuntime]
    now: Callable[[], datetime]
    setup_logging: Callable[[], None]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        runtime_factory=create_runtime,
        now=lambda: datetime.now(UTC),
        setup_logging=setup_logging,
    )


@click.group()
def cli() -> None:
    """Subscription billing jobs."""
    pass


@cli.command("run-job")
@click.argument("job", type=click.Choice(sorted(JOB_ALIASES)))
@click.option(
    "--date",
    "run_date",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Business date to run for (defaults to today, UTC)",
)
def run_job(job: str, run_date: datetime | None) -> None:
    """Run one billing job now and print its summary as JSON."""
    deps = _get_cli_dependencies()
    deps.setup_logging()
    today: date | None = run_date.date() if run_date else None

    async def _run() -> dict[str, object]:
        runtime = deps.runtime_factory()
        result = await runtime.scheduler.run(JOB_ALIASES[job], today)
        return {**result.summary(), "message": result.message}

    summary = asyncio.run(_run())
    click.echo(json.dumps(summary, indent=2))


@cli.command()
def schedule() -> None:
    """Show when each recurring job fires next."""
    deps = _get_cli_dependencies()
    runtime = deps.runtime_factory()
    now = deps.now()
    for job in runtime.recurring_jobs():
        next_fire = job.next_fire_after(now)
        click.echo(f"{job.name:<24} {next_fire.isoformat()}  (misfire: {job.policy.value})")


@cli.command()
@click.option("--poll-seconds", default=30.0, show_default=True, help="Seconds between checks")
def serve(poll_seconds: float) -> None:
    """Run the recurring jobs in-process until interrupted."""
    deps = _get_cli_dependencies()
    deps.setup_logging()

    async def _serve() -> None:
        runtime = deps.runtime_factory()
        runner = RecurringJobRunner(runtime.recurring_jobs(), clock=deps.now)
        await runner.run_forever(poll_seconds)

    click.echo("Running billing jobs, press Ctrl+C to stop")
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        click.echo("Stopped")


if __name__ == "__main__":
    cli()
