import asyncio
import json
import sys
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from coachbook.domain.bookings import db_models as booking_db_models  # noqa: F401
from coachbook.domain.bookings.db_models import Booking
from coachbook.domain.bookings.statuses import BookingStatus, PayoutStatus
from coachbook.domain.disputes import db_models as dispute_db_models  # noqa: F401
from coachbook.domain.errors import ProcessorError, SignatureError
from coachbook.domain.notifications import db_models as notification_db_models  # noqa: F401
from coachbook.domain.ops import db_models as ops_db_models  # noqa: F401
from coachbook.domain.payments import db_models as payment_db_models  # noqa: F401
from coachbook.domain.payments.db_models import Payment
from coachbook.domain.payments.service import compute_split
from coachbook.domain.payments.statuses import EscrowStatus, PaymentStatus
from coachbook.domain.reliability import db_models as reliability_db_models  # noqa: F401
from coachbook.domain.reviews import db_models as review_db_models  # noqa: F401
from coachbook.domain.users.db_models import ROLE_ADMIN, ROLE_COACH, ROLE_STUDENT, CoachProfile, Lesson, User
from coachbook.infra.auth import issue_access_token
from coachbook.infra.db import Base, get_db_session
from coachbook.infra.processor import PaymentIntentResult, ProcessorRef
from coachbook.main import app
from coachbook.settings import settings

VALID_SIGNATURE = "t=1,v1=valid"


class FakeProcessor:
    """In-memory processor that records every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.fail_intent = False
        self.fail_transfer = False
        self.fail_refund = False
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_test_{self._counter}"

    def create_payment_intent(self, amount, currency, customer_id=None, metadata=None):
        self.calls.append(("create_payment_intent", {"amount": amount, "currency": currency, "metadata": metadata}))
        if self.fail_intent:
            raise ProcessorError(reason="card_declined")
        intent_id = self._next_id("pi")
        return PaymentIntentResult(
            id=intent_id,
            client_secret=f"{intent_id}_secret_abc",
            amount=amount,
            currency=currency,
            status="requires_payment_method",
        )

    def capture_confirmed_intent(self, intent_id):
        self.calls.append(("capture_confirmed_intent", {"intent_id": intent_id}))
        return ProcessorRef(id=intent_id)

    def create_refund(self, charge_id, amount=None, reason="requested_by_customer"):
        self.calls.append(("create_refund", {"charge_id": charge_id, "amount": amount, "reason": reason}))
        if self.fail_refund:
            raise ProcessorError(reason="charge_already_refunded")
        return ProcessorRef(id=self._next_id("re"))

    def transfer_to_payout_account(self, account_id, amount, currency, metadata=None):
        self.calls.append(
            ("transfer_to_payout_account", {"account_id": account_id, "amount": amount, "currency": currency})
        )
        if self.fail_transfer:
            raise ProcessorError(reason="account_invalid")
        return ProcessorRef(id=self._next_id("tr"))

    def verify_webhook_signature(self, payload, signature):
        if signature != VALID_SIGNATURE:
            raise SignatureError()
        return json.loads(payload)

    def calls_named(self, name: str) -> list[dict]:
        return [payload for call, payload in self.calls if call == name]


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    original_testing = settings.testing
    original_app_env = settings.app_env
    original_metrics = settings.metrics_enabled
    original_metrics_token = settings.metrics_token
    original_heartbeat_ttl = settings.job_heartbeat_ttl_seconds
    original_fee = settings.platform_fee_percent
    original_reschedule_limit = settings.default_reschedule_limit
    yield
    settings.testing = original_testing
    settings.app_env = original_app_env
    settings.metrics_enabled = original_metrics
    settings.metrics_token = original_metrics_token
    settings.job_heartbeat_ttl_seconds = original_heartbeat_ttl
    settings.platform_fee_percent = original_fee
    settings.default_reschedule_limit = original_reschedule_limit


@pytest.fixture(autouse=True)
def enable_test_mode():
    settings.testing = True
    settings.app_env = "dev"
    yield


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture()
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture()
def client(async_session_maker, processor):
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    original_processor = getattr(app.state, "payment_processor", None)
    app.state.db_session_factory = async_session_maker
    app.state.payment_processor = processor
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
    app.state.payment_processor = original_processor


@pytest.fixture()
def client_no_raise(async_session_maker, processor):
    """Test client that returns HTTP responses instead of raising server exceptions."""

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    original_processor = getattr(app.state, "payment_processor", None)
    app.state.db_session_factory = async_session_maker
    app.state.payment_processor = processor
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
    app.state.payment_processor = original_processor


def auth_headers(user_id: str, role: str) -> dict[str, str]:
    token = issue_access_token(user_id, role, secret=settings.auth_secret_key, ttl_minutes=30)
    return {"Authorization": f"Bearer {token}"}


async def seed_user(session, role: str = ROLE_STUDENT, *, payout_account_id: str | None = None, **kwargs) -> User:
    user = User(
        full_name=kwargs.pop("full_name", f"Test {role}"),
        email=kwargs.pop("email", f"{role}-{uuid.uuid4().hex[:12]}@example.com"),
        role=role,
        **kwargs,
    )
    session.add(user)
    await session.flush()
    if role == ROLE_COACH:
        session.add(CoachProfile(user_id=user.user_id, payout_account_id=payout_account_id))
    await session.commit()
    return user


async def seed_marketplace(session, *, price: str = "100.00", payout_account_id: str | None = None):
    """Coach with one lesson, a student and an admin."""
    coach = await seed_user(session, ROLE_COACH, payout_account_id=payout_account_id)
    student = await seed_user(session, ROLE_STUDENT)
    admin = await seed_user(session, ROLE_ADMIN)
    lesson = Lesson(coach_id=coach.user_id, title="Serve clinic", duration_minutes=60, price=Decimal(price))
    session.add(lesson)
    await session.commit()
    return coach, student, admin, lesson


async def seed_booking(
    session,
    lesson: Lesson,
    student: User,
    *,
    scheduled_at: datetime | None = None,
    status: BookingStatus = BookingStatus.CONFIRMED,
    payout_status: PayoutStatus = PayoutStatus.NONE,
    escrow_status: EscrowStatus | None = EscrowStatus.HELD,
    payment_status: PaymentStatus = PaymentStatus.CAPTURED,
    charge_id: str | None = None,
) -> tuple[Booking, Payment | None]:
    """Insert a booking, and a payment unless escrow_status is None, in the given states."""
    start = scheduled_at or datetime.now(tz=timezone.utc) + timedelta(days=3)
    booking = Booking(
        lesson_id=lesson.lesson_id,
        coach_id=lesson.coach_id,
        primary_student_id=student.user_id,
        scheduled_at=start,
        duration_minutes=lesson.duration_minutes,
        price=lesson.price,
        status=status.value,
        payout_status=payout_status.value,
        messaging_locked=status == BookingStatus.PENDING,
        reschedule_count=0,
        reschedule_limit=settings.default_reschedule_limit,
        extra_paid_reschedules=0,
        reschedule_deadline=start - timedelta(hours=settings.reschedule_deadline_hours),
    )
    session.add(booking)
    await session.flush()
    payment = None
    if escrow_status is not None:
        split = compute_split(lesson.price)
        payment = Payment(
            booking_id=booking.booking_id,
            student_id=student.user_id,
            coach_id=lesson.coach_id,
            lesson_price=Decimal(lesson.price),
            platform_fee_amount=split.platform_fee_amount,
            total_charge_to_student=split.total_charge_to_student,
            coach_payout_expected=split.coach_payout_expected,
            escrow_status=escrow_status.value,
            payment_status=payment_status.value,
            processor_intent_id=f"pi_{booking.booking_id[:8]}",
            processor_charge_id=charge_id or f"ch_{booking.booking_id[:8]}",
        )
        session.add(payment)
    await session.commit()
    return booking, payment
