from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, func
from sqlalchemy.orm import Mapped, mapped_column

from coachbook.infra.db import Base


class UserReliability(Base):
    __tablename__ = "user_reliability"

    user_id: Mapped[str] = mapped_column(ForeignKey("users.user_id"), primary_key=True)
    total_bookings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_reschedules: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_reschedules: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    late_cancels: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    no_shows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    coach_cancels: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reliability_score: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("100.00"))
    last_calculated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
