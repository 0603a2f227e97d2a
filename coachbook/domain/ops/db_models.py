from datetime import datetime

from sqlalchemy import DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from coachbook.infra.db import Base


class JobHeartbeat(Base):
    __tablename__ = "job_heartbeats"

    runner_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_beat_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    last_jobs: Mapped[str | None] = mapped_column(String(255))
    tick_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
