# src/gatehouse/scripts/migrate.py
from __future__ import annotations

import os

from alembic import command
from alembic.config import Config

from gatehouse.core.settings import settings


def run_upgrade_head() -> None:
    migrations_dir = os.path.abspath(
        os.path.join(os.path.dirname(__file__), "..", "..", "..", "migrations")
    )
    cfg = Config(os.path.join(migrations_dir, "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", settings.effective_database_url)
    cfg.set_main_option("script_location", migrations_dir)
    command.upgrade(cfg, "head")


if __name__ == "__main__":
    run_upgrade_head()
