from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone

from coachbook.domain.clock import ensure_utc, utc_now
from coachbook.infra.metrics import metrics

logger = logging.getLogger(__name__)

SweepRunner = Callable[[datetime], Awaitable[dict[str, int]]]


@dataclass
class ScheduledTask:
    """A sweep that fires either every ``interval`` or once a day at ``daily_at`` (UTC)."""

    name: str
    run: SweepRunner
    interval: timedelta | None = None
    daily_at: time | None = None
    last_run_at: datetime | None = None
    next_run_at: datetime | None = field(default=None)

    def __post_init__(self) -> None:
        if (self.interval is None) == (self.daily_at is None):
            raise ValueError(f"task {self.name} needs exactly one of interval or daily_at")

    def _next_daily(self, now: datetime, *, inclusive: bool) -> datetime:
        slot = datetime.combine(now.date(), self.daily_at, tzinfo=timezone.utc)
        if slot < now or (slot == now and not inclusive):
            slot += timedelta(days=1)
        return slot

    def due(self, now: datetime) -> bool:
        now = ensure_utc(now)
        if self.next_run_at is None:
            self.next_run_at = now if self.interval is not None else self._next_daily(now, inclusive=True)
        return now >= self.next_run_at

    def mark_ran(self, now: datetime) -> None:
        now = ensure_utc(now)
        self.last_run_at = now
        if self.interval is not None:
            self.next_run_at = now + self.interval
        else:
            self.next_run_at = self._next_daily(now, inclusive=False)


class Scheduler:
    def __init__(self, tasks: list[ScheduledTask], clock: Callable[[], datetime] = utc_now) -> None:
        self.tasks = tasks
        self.clock = clock

    async def tick(self, now: datetime | None = None) -> dict[str, dict[str, int]]:
        now = ensure_utc(now or self.clock())
        results: dict[str, dict[str, int]] = {}
        for task in self.tasks:
            if not task.due(now):
                continue
            try:
                result = await task.run(now)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "job_failed",
                    extra={"extra": {"job": task.name, "reason": type(exc).__name__}},
                )
                result = {"failed": 1}
            task.mark_ran(now)
            logger.info("sweep_complete", extra={"extra": {"job": task.name, **result}})
            metrics.record_sweep(task.name, result)
            results[task.name] = result
        return results

    async def run_forever(
        self,
        tick_seconds: float = 1.0,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_tick: Callable[[dict[str, dict[str, int]]], Awaitable[None]] | None = None,
        max_ticks: int | None = None,
    ) -> None:
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            results = await self.tick()
            if on_tick is not None:
                await on_tick(results)
            ticks += 1
            await sleep(tick_seconds)
