import sys
from logging.config import fileConfig
from pathlib import Path

from sqlalchemy import create_engine, pool
from sqlalchemy.engine import Connection

from alembic import context

# Project root on sys.path so `backend.app` imports when alembic runs from backend/
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from backend.app.core.base import Base
from backend.app.core.settings import get_settings

# Import every model so it registers in the metadata
from backend.app.models import user, product, referral, withdrawal  # noqa: F401

# Sync URL for migrations (psycopg2): no asyncio needed here
SYNC_DB_URL = get_settings().sync_db_url

# this is the Alembic Config object, which provides
# access to the values within the .ini file in use.
config = context.config

# ConfigParser treats % as interpolation; escape it
config.set_main_option("sqlalchemy.url", SYNC_DB_URL.replace("%", "%%"))

# Interpret the config file for Python logging.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode.

    Configures the context with just a URL so the SQL is emitted
    to the script output instead of executed.
    """
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode using sync engine (psycopg2)."""
    connectable = create_engine(SYNC_DB_URL, poolclass=pool.NullPool)
    with connectable.connect() as connection:
        do_run_migrations(connection)
    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
