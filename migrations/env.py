"""Alembic environment configuration.

Uses psycopg v3 sync engine for migrations against the main database.
Connection details come from application settings (config.py).
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from buildflow.config import settings
from buildflow.storage.orm import Base

# this is the Alembic Config object, which provides
# access to the values within the .ini file in use.
config = context.config

# Interpret the config file for Python logging.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Autogenerate support: point at our ORM metadata.
target_metadata = Base.metadata

# Built from settings rather than alembic.ini; passwords may hold characters
# that configparser interpolation would mangle.
database_url = settings.main_database().to_sqlalchemy("postgresql+psycopg")


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode.

    Configures the context with just a URL so that
    calls to context.execute() emit SQL to the script output.
    """
    context.configure(
        url=database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode.

    Creates a sync engine via psycopg v3 and runs migrations
    within a transaction.
    """
    connectable = create_engine(database_url, poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
