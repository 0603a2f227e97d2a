from datetime import datetime

from sqlalchemy.ext.asyncio import async_sessionmaker

from coachbook.domain.clock import ensure_utc, utc_now
from coachbook.domain.ops.db_models import JobHeartbeat

RUNNER_NAME = "coachbook-scheduler"


async def record_heartbeat(
    session_factory: async_sessionmaker,
    jobs: list[str] | None = None,
    runner_name: str = RUNNER_NAME,
) -> JobHeartbeat:
    now = utc_now()
    async with session_factory() as session:
        heartbeat = await session.get(JobHeartbeat, runner_name)
        if heartbeat is None:
            heartbeat = JobHeartbeat(runner_name=runner_name, tick_count=0)
            session.add(heartbeat)
        heartbeat.last_beat_at = now
        heartbeat.tick_count = (heartbeat.tick_count or 0) + 1
        if jobs:
            heartbeat.last_jobs = ",".join(sorted(jobs))[:255]
        await session.commit()
        return heartbeat


async def heartbeat_age_seconds(
    session_factory: async_sessionmaker,
    now: datetime | None = None,
    runner_name: str = RUNNER_NAME,
) -> float | None:
    async with session_factory() as session:
        heartbeat = await session.get(JobHeartbeat, runner_name)
    if heartbeat is None:
        return None
    return ((now or utc_now()) - ensure_utc(heartbeat.last_beat_at)).total_seconds()
