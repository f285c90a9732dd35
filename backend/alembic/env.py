# ==============================================================================
# == backend/alembic/env.py - Migration environment for the access hub DB   ==
# ==============================================================================

import os
import sys
from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from alembic import context

# Make the accesshub package importable
backend_root = os.path.realpath(os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, backend_root)

# --- Alembic config ---
config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

# An explicit URL (tests, scripts) wins over .env
if not config.get_main_option("sqlalchemy.url"):
    from accesshub.config import Settings
    config.set_main_option(
        "sqlalchemy.url",
        Settings().DATABASE_URL.replace("sqlite+aiosqlite:", "sqlite:")
    )

from accesshub import models  # noqa: E402,F401
from accesshub.database import Base  # noqa: E402
target_metadata = Base.metadata

VERSION_TABLE = 'alembic_version_accesshub'


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        version_table=VERSION_TABLE,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            version_table=VERSION_TABLE,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
