"""Alembic environment for Kebilo."""

from __future__ import annotations

from logging.config import fileConfig

from alembic import context
import sqlalchemy as sa
from sqlalchemy import pool

from kebilo.db.config import get_database_settings
from kebilo.db.models import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

settings = get_database_settings()
config.set_main_option("sqlalchemy.url", settings.url.replace("%", "%%"))

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=settings.url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        render_as_batch=settings.is_sqlite,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine_options = settings.engine_options()
    connect_args = engine_options.pop("connect_args", {})
    for key in ("pool_size", "max_overflow", "pool_timeout"):
        engine_options.pop(key, None)
    engine = sa.create_engine(
        settings.url,
        connect_args=connect_args,
        poolclass=pool.NullPool,
        **engine_options,
    )

    with engine.begin() as connection:
        if settings.is_postgres:
            connection.execute(sa.text("SET TIME ZONE 'UTC'"))
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=settings.is_sqlite,
        )
        context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
