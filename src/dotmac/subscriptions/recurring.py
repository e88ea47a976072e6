"""
Recurring job definitions.

Triggers describe *when* a job fires; :class:`RecurringJob` pairs a trigger
with a misfire policy and an async callback. The same definitions feed the
Celery beat schedule and the in-process :class:`RecurringJobRunner`.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, time, timedelta, tzinfo
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class MisfirePolicy(str, Enum):
    """What to do with fire times missed while nothing was running."""

    SKIP = "skip"  # run once for the latest missed fire, drop the rest
    CATCH_UP = "catch_up"  # run once per missed fire


@dataclass(frozen=True)
class DailyAt:
    """Fires once a day at ``hour:minute`` in ``tz``."""

    hour: int
    minute: int = 0
    tz: tzinfo = UTC

    def __post_init__(self) -> None:
        if not 0 <= self.hour <= 23 or not 0 <= self.minute <= 59:
            raise ValueError(f"Invalid time of day: {self.hour:02d}:{self.minute:02d}")

    @property
    def period(self) -> timedelta:
        return timedelta(days=1)

    def next_after(self, moment: datetime) -> datetime:
        local = moment.astimezone(self.tz)
        candidate = datetime.combine(local.date(), time(self.hour, self.minute), tzinfo=self.tz)
        if candidate <= local:
            candidate = datetime.combine(
                local.date() + timedelta(days=1), time(self.hour, self.minute), tzinfo=self.tz
            )
        return candidate.astimezone(UTC)


@dataclass(frozen=True)
class Every:
    """Fires every ``interval``, aligned to ``anchor``."""

    interval: timedelta
    anchor: datetime = EPOCH

    def __post_init__(self) -> None:
        if self.interval <= timedelta(0):
            raise ValueError("Interval must be positive")

    @property
    def period(self) -> timedelta:
        return self.interval

    def next_after(self, moment: datetime) -> datetime:
        elapsed = moment - self.anchor
        if elapsed < timedelta(0):
            return self.anchor.astimezone(UTC)
        periods = elapsed // self.interval + 1
        return (self.anchor + periods * self.interval).astimezone(UTC)


Trigger = DailyAt | Every
JobCallback = Callable[[], Awaitable[Any]]


@dataclass
class RecurringJob:
    name: str
    trigger: Trigger
    callback: JobCallback
    policy: MisfirePolicy = MisfirePolicy.SKIP

    def next_fire_after(self, moment: datetime) -> datetime:
        return self.trigger.next_after(moment)

    def fires_between(self, last: datetime, now: datetime) -> list[datetime]:
        """Fire times in ``(last, now]`` that should be executed now."""
        fires: list[datetime] = []
        moment = self.next_fire_after(last)
        while moment <= now:
            fires.append(moment)
            moment = self.next_fire_after(moment)
        if self.policy == MisfirePolicy.SKIP:
            return fires[-1:]
        return fires

    @property
    def expires_seconds(self) -> float | None:
        return expires_after(self.trigger, self.policy)


def expires_after(trigger: Trigger, policy: MisfirePolicy) -> float | None:
    """How long a queued run stays valid; ``None`` keeps it until executed."""
    if policy == MisfirePolicy.SKIP:
        return trigger.period.total_seconds()
    return None


class JobGuard:
    """Tracks running jobs so a job never overlaps with itself."""

    def __init__(self) -> None:
        self._running: set[str] = set()

    def is_running(self, name: str) -> bool:
        return name in self._running

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[bool]:
        """Yield ``True`` while holding ``name``, or ``False`` if it is already held."""
        if name in self._running:
            yield False
            return
        self._running.add(name)
        try:
            yield True
        finally:
            self._running.discard(name)


@dataclass
class RecurringJobRunner:
    """Runs recurring jobs in-process for deployments without Celery beat."""

    jobs: list[RecurringJob]
    guard: JobGuard = field(default_factory=JobGuard)
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(UTC))
    last_checked: dict[str, datetime] = field(default_factory=dict)
    _tasks: set[asyncio.Task[None]] = field(default_factory=set, init=False, repr=False)

    def __post_init__(self) -> None:
        now = self.clock()
        for job in self.jobs:
            self.last_checked.setdefault(job.name, now)

    async def tick(self, now: datetime | None = None) -> dict[str, int]:
        """Dispatch every job with pending fire times; returns runs per job.

        Jobs run as background tasks so a slow job never delays the others.
        A dispatch that finds the same job still running is dropped by the guard.
        """
        now = now or self.clock()
        due = {
            job.name: len(job.fires_between(self.last_checked[job.name], now)) for job in self.jobs
        }
        for job in self.jobs:
            self.last_checked[job.name] = now

        for job in self.jobs:
            if due[job.name]:
                task = asyncio.create_task(self._run(job, due[job.name]), name=job.name)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        return {name: count for name, count in due.items() if count}

    async def run_forever(self, poll_seconds: float = 30.0) -> None:
        logger.info("recurring.runner.started", jobs=[job.name for job in self.jobs])
        try:
            while True:
                await self.tick()
                await asyncio.sleep(poll_seconds)
        finally:
            await self.shutdown()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        """Wait for every dispatched run to finish."""
        while self._tasks:
            await asyncio.gather(*self._tasks)

    async def shutdown(self) -> None:
        """Cancel dispatched runs and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("recurring.runner.stopped", cancelled=len(tasks))

    def schedule(self, now: datetime | None = None) -> dict[str, datetime]:
        now = now or self.clock()
        return {job.name: job.next_fire_after(now) for job in self.jobs}

    async def _run(self, job: RecurringJob, runs: int) -> None:
        async with self.guard.hold(job.name) as acquired:
            if not acquired:
                logger.warning("recurring.job.overlap_skipped", job=job.name)
                return
            for _ in range(runs):
                try:
                    await job.callback()
                except Exception as e:
                    logger.error("recurring.job.failed", job=job.name, error=str(e), exc_info=True)
