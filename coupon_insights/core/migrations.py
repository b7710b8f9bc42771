from __future__ import annotations

import asyncio
from pathlib import Path

from alembic import command
from alembic.config import Config

from coupon_insights.core.config import get_settings


PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _make_alembic_config(database_url: str | None = None) -> Config:
    """Return Alembic configuration pointing at the analytics schema scripts."""
    alembic_ini = PROJECT_ROOT / "alembic.ini"
    if not alembic_ini.exists():
        raise RuntimeError(f"Alembic configuration not found at {alembic_ini}")

    url = database_url or get_settings().database_url
    if not url:
        raise RuntimeError("DATABASE_URL must be configured to run migrations.")

    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", url)
    config.attributes["configure_logger"] = False
    return config


async def migrate_database(revision: str = "head", *, database_url: str | None = None) -> None:
    """Upgrade the analytics schema to the requested Alembic revision."""
    config = _make_alembic_config(database_url)
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, command.upgrade, config, revision)
