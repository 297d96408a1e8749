from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

from orgcore.infra.db import DATABASE_URL

ROOT = Path(__file__).resolve().parents[2]


def build_config(database_url: str = DATABASE_URL) -> Config:
    config = Config(str(ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(ROOT / "infra" / "migrations"))
    config.set_main_option("sqlalchemy.url", database_url)
    config.attributes["database_url"] = database_url
    return config


def run_upgrade_head(database_url: str = DATABASE_URL) -> None:
    command.upgrade(build_config(database_url), "head")


if __name__ == "__main__":
    run_upgrade_head()
