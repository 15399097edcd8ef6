import asyncio
import logging

from core.database import create_engine
from core.logging import setup_logging
from ingestion.checkpoint_backends import create_checkpoint_tables

logger = logging.getLogger(__name__)


async def init_database():
    logger.info("Connecting to database...")
    engine = create_engine()

    try:
        logger.info("Creating checkpoint table...")
        await create_checkpoint_tables(engine)
        logger.info("Tables created successfully.")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(init_database())
