import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine

from coachbook.domain.bookings import db_models as booking_db_models  # noqa: F401
from coachbook.domain.disputes import db_models as dispute_db_models  # noqa: F401
from coachbook.domain.notifications import db_models as notification_db_models  # noqa: F401
from coachbook.domain.ops import db_models as ops_db_models  # noqa: F401
from coachbook.domain.payments import db_models as payment_db_models  # noqa: F401
from coachbook.domain.reliability import db_models as reliability_db_models  # noqa: F401
from coachbook.domain.reviews import db_models as review_db_models  # noqa: F401
from coachbook.domain.users import db_models as user_db_models  # noqa: F401
from coachbook.infra.db import Base
from coachbook.settings import settings

config = context.config
config.set_main_option("sqlalchemy.url", settings.database_url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def _run_sync_migrations(connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    connectable = create_async_engine(config.get_main_option("sqlalchemy.url"), poolclass=pool.NullPool)
    async with connectable.connect() as connection:
        await connection.run_sync(_run_sync_migrations)
    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
