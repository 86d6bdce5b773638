import logging

from core.logging_setup import log_step
from core.orm import AsyncSessionLocal, engine, init_orm

logger = logging.getLogger(__name__)

LOG_STEP = "DATABASE"


async def init_db() -> None:
    """Creates the integrations schema if it does not exist yet."""
    try:
        await init_orm()
        with log_step(LOG_STEP):
            logger.info(f"Integrations schema ready on {engine.dialect.name}.")
    except Exception as e:
        with log_step(LOG_STEP):
            logger.error(f"Failed to create integrations schema: {e}", exc_info=True)
        raise


async def close_db() -> None:
    await engine.dispose()
    with log_step(LOG_STEP):
        logger.info("Database engine disposed.")


__all__ = ["AsyncSessionLocal", "close_db", "init_db"]
