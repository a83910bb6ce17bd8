import asyncio
import sys

from .server import StorefrontServer
from .utils.config import Settings
from .utils.logger import logger


async def serve() -> None:
    settings = Settings()
    logger.info("Initializing TorpTCG storefront...")

    for name in settings.missing():
        logger.warning(f"{name} is not set; inventory endpoints will answer 500 until it is configured.")
    if not settings.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY is not set; checkout is disabled.")

    server = StorefrontServer(settings)
    try:
        await server.start()
    except OSError as e:
        logger.critical(f"Storefront failed to start: {e}")
        sys.exit(1)

    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


def main() -> None:
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("Shutting down.")


if __name__ == "__main__":
    main()
