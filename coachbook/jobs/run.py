import argparse
import asyncio
import logging
from datetime import time, timedelta
from functools import partial

from sqlalchemy.ext.asyncio import async_sessionmaker

from coachbook.infra.db import dispose_engine, get_session_factory
from coachbook.infra.logging import configure_logging
from coachbook.infra.metrics import configure_metrics
from coachbook.infra.processor import PaymentProcessor
from coachbook.infra.stripe_client import StripeClient
from coachbook.jobs import sweeps
from coachbook.jobs.heartbeat import record_heartbeat
from coachbook.jobs.scheduler import ScheduledTask, Scheduler
from coachbook.settings import settings

logger = logging.getLogger(__name__)

JOB_NAMES = ("reminders", "auto-confirm", "payout-release", "reliability")


def build_tasks(
    session_factory: async_sessionmaker,
    processor: PaymentProcessor,
    job_names: list[str] | None = None,
) -> list[ScheduledTask]:
    tasks = {
        "reminders": ScheduledTask(
            name="reminders",
            run=sweeps.ReminderSweep(session_factory),
            interval=timedelta(minutes=1),
        ),
        "auto-confirm": ScheduledTask(
            name="auto-confirm",
            run=partial(sweeps.run_auto_confirm_sweep, session_factory),
            interval=timedelta(minutes=5),
        ),
        "payout-release": ScheduledTask(
            name="payout-release",
            run=partial(sweeps.run_payout_sweep, session_factory, processor),
            interval=timedelta(minutes=10),
        ),
        "reliability": ScheduledTask(
            name="reliability",
            run=partial(sweeps.run_reliability_sweep, session_factory),
            daily_at=time(hour=settings.reliability_run_hour),
        ),
    }
    selected = job_names or list(JOB_NAMES)
    unknown = [name for name in selected if name not in tasks]
    if unknown:
        raise ValueError(f"unknown_job:{','.join(unknown)}")
    return [tasks[name] for name in selected]


async def run_once(scheduler: Scheduler) -> dict[str, dict[str, int]]:
    # every task is due on its first tick, daily ones included
    for task in scheduler.tasks:
        task.next_run_at = scheduler.clock()
    return await scheduler.tick()


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run the booking and escrow sweeps")
    parser.add_argument("--job", action="append", dest="jobs", choices=JOB_NAMES, help="Job name to run")
    parser.add_argument("--tick", type=float, default=15.0, help="Seconds between scheduler ticks")
    parser.add_argument("--once", action="store_true", help="Run the selected jobs once and exit")
    args = parser.parse_args(argv)

    configure_logging()
    configure_metrics(settings.metrics_enabled)
    session_factory = get_session_factory()
    processor = StripeClient(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
    )
    scheduler = Scheduler(build_tasks(session_factory, processor, args.jobs))

    async def _beat(results: dict[str, dict[str, int]]) -> None:
        await record_heartbeat(session_factory, jobs=list(results))

    try:
        if args.once:
            await _beat(await run_once(scheduler))
            return
        logger.info("scheduler_started", extra={"extra": {"jobs": [task.name for task in scheduler.tasks]}})
        await scheduler.run_forever(max(args.tick, 1.0), on_tick=_beat)
    finally:
        await dispose_engine()


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
