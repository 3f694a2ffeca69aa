"""Background refresher entry point."""

import asyncio
from contextlib import asynccontextmanager

import structlog

from trusted_stake import __version__
from trusted_stake.core.redis import close_redis
from trusted_stake.core.scheduler import start_scheduler, stop_scheduler
from trusted_stake.services.portfolio import get_portfolio_service

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan():
    """Start the scheduler and release shared resources on exit."""
    logger.info("Starting Trusted Stake refresher", version=__version__)
    start_scheduler()

    try:
        yield
    finally:
        logger.info("Shutting down...")
        stop_scheduler()
        get_portfolio_service().shutdown()
        await close_redis()
        logger.info("Cleanup complete")


async def run() -> None:
    async with lifespan():
        await asyncio.Event().wait()


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
