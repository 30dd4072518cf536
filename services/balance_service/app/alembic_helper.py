import asyncio
import os

from alembic import command
from alembic.config import Config
from loguru import logger


async def run_alembic_migrations(database_dsn: str) -> None:
    """Upgrade the balance schema to ``head`` using the given sync DSN."""
    base_dir = os.path.dirname(os.path.abspath(__file__))
    # Points to: services/balance_service/app/db/migrations/alembic.ini
    alembic_ini_path = os.path.join(base_dir, "db", "migrations", "alembic.ini")
    if not os.path.exists(alembic_ini_path):
        logger.warning("Alembic config not found at {}, skipping migrations.", alembic_ini_path)
        return

    alembic_cfg = Config(alembic_ini_path)
    alembic_cfg.set_main_option("script_location", os.path.dirname(alembic_ini_path))
    alembic_cfg.set_main_option("sqlalchemy.url", database_dsn)

    logger.info("Running Alembic migrations...")
    # Alembic is synchronous; keep the event loop free while it runs
    await asyncio.to_thread(command.upgrade, alembic_cfg, "head")
    logger.info("Alembic migrations applied.")
