"""
Entry point for Goodcoin Feed Service
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
import logging

from .config import Settings, settings as default_settings
from .container import ServiceContainer

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings = default_settings):
    """Configure root logging once for the process"""
    logging.basicConfig(
        level=logging.INFO if not settings.DEBUG else logging.DEBUG,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@asynccontextmanager
async def lifespan(container: Optional[ServiceContainer] = None) -> AsyncIterator[ServiceContainer]:
    """Service lifespan manager"""
    container = container or ServiceContainer()
    settings = container.settings
    configure_logging(settings)

    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}...")
    await container.connect()
    logger.info(f"{settings.APP_NAME} started successfully")

    try:
        yield container
    finally:
        # Shutdown
        logger.info(f"Shutting down {settings.APP_NAME}...")
        await container.disconnect()
        logger.info(f"{settings.APP_NAME} shut down successfully")
