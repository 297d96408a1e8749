from __future__ import annotations

import os
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlmodel import SQLModel

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from orgcore.domain import models  # noqa: E402,F401
from orgcore.infra.db import make_engine  # noqa: E402

config = context.config

# in-process upgrades keep the application's logging setup
if config.config_file_name is not None and "database_url" not in config.attributes:
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata


def resolve_database_url() -> str:
    explicit = config.attributes.get("database_url")
    if explicit:
        return str(explicit)
    return os.getenv("DATABASE_URL") or str(config.get_main_option("sqlalchemy.url"))


def run_migrations_offline() -> None:
    context.configure(
        url=resolve_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    migration_engine = make_engine(resolve_database_url())
    try:
        with migration_engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                compare_type=True,
                render_as_batch=connection.dialect.name == "sqlite",
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        migration_engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
