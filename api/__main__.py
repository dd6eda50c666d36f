"""Command line interface for running the settlement API server."""
import logging

import uvicorn
import uvloop

from config import settings_conf
from database import Database
from ledger import MemoryLedgerStore
from ledger.postgres import PostgresLedgerStore

from . import create_app
from .services import Services

# Configure logging
logging.basicConfig(
    level=getattr(logging, str(settings_conf['log_level']).upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def startup():
    """Open the ledger store selected in settings.conf."""
    if settings_conf['storage_backend'] == 'memory':
        logger.warning("Using the in-memory ledger; nothing survives a restart")
        return MemoryLedgerStore()

    logger.info("Initializing database...")
    database = Database.from_settings(settings_conf)
    await database.init()
    return PostgresLedgerStore(database)


async def main():
    """Run the API server until it is stopped."""
    store = await startup()
    services = Services.from_settings(settings_conf, store)
    config = uvicorn.Config(
        create_app(services),
        host=settings_conf['api_host'],
        port=settings_conf['api_port'],
        log_level=str(settings_conf['log_level']).lower()
    )
    server = uvicorn.Server(config)
    logger.info(f"Serving on {settings_conf['api_host']}:{settings_conf['api_port']}")
    try:
        await server.serve()
    finally:
        # The app lifespan closes the store; this covers a failed startup
        await store.close()
        logger.info("Shutdown complete")


if __name__ == "__main__":
    uvloop.run(main())
