import asyncio
from logging.config import fileConfig

import sqlalchemy as sa
from alembic import context
from sqlalchemy import pool
from sqlalchemy.dialects import postgresql
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

import app.models  # noqa: F401
from app.shared.core.config import get_settings
from app.shared.db.base import Base
from app.shared.db.session import normalize_db_url

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def compare_type(context, inspected_column, metadata_column, inspected_type, metadata_type):
    """background_jobs payload/result are JSON with a JSONB variant on PostgreSQL."""
    json_types = (sa.JSON, postgresql.JSON, postgresql.JSONB)
    if isinstance(inspected_type, json_types) and isinstance(metadata_type, json_types):
        return False
    return None


def _database_url() -> str:
    url = normalize_db_url(get_settings().DATABASE_URL)
    if not url:
        raise ValueError("DATABASE_URL is not set; cannot run migrations.")
    return url


def _configure(**kwargs) -> None:
    context.configure(target_metadata=target_metadata, compare_type=compare_type, **kwargs)
    with context.begin_transaction():
        context.run_migrations()


def _run_sync(connection: Connection) -> None:
    _configure(connection=connection)


async def _run_online() -> None:
    engine = create_async_engine(_database_url(), poolclass=pool.NullPool)
    async with engine.connect() as connection:
        await connection.run_sync(_run_sync)
    await engine.dispose()


if context.is_offline_mode():
    _configure(
        url=_database_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
else:
    asyncio.run(_run_online())
