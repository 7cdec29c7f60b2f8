import asyncio
import logging
import certifi
import ssl
from typing import Optional, Tuple
import redis.asyncio as redis
from aiohttp import web

from clanhub.utils.logger import setup_logging
from clanhub.config.settings import Settings, get_settings
from clanhub.core.ratelimit import RateLimiter
from clanhub.core.tokens import TokenService
from clanhub.db.database import init_db, init_redis, repositories_factory, close_resources
from clanhub.services.discord_api import DiscordClient
from clanhub.utils.constants import APP_VERSION
from clanhub.web.app import create_app

# Initialize logging first
setup_logging()
logger = logging.getLogger('ClanHub')

async def initialize_services(settings: Settings) -> Tuple[object, object, Optional[redis.Redis]]:
    """Initialize database and Redis connections"""
    try:
        logger.info("Initializing PostgreSQL connection...")
        engine, session_factory = await init_db(settings)
        logger.info("PostgreSQL connection established")

        redis_client = None
        if settings.redis_enabled:
            logger.info("Initializing Redis connection...")
            redis_client = await init_redis(settings.redis_url)
            logger.info("Redis connection established")
        else:
            logger.warning("Redis disabled; cooldowns are process-local")

        return engine, session_factory, redis_client
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}")
        raise

async def main() -> None:
    """Main entry point for the ClanHub web server"""
    engine = None
    redis_client: Optional[redis.Redis] = None
    discord: Optional[DiscordClient] = None
    runner: Optional[web.AppRunner] = None

    try:
        logger.info(f"Starting ClanHub v{APP_VERSION}")

        settings = get_settings()
        settings.ensure_directories()
        setup_logging(level='DEBUG' if settings.debug else None,
                      json_logging=settings.log_json, log_dir=settings.log_dir)

        engine, session_factory, redis_client = await initialize_services(settings)

        # Set up SSL context for secure connections
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        logger.info("SSL context created")

        discord = DiscordClient(settings, redis_client=redis_client, ssl_context=ssl_context)
        await discord.start()

        app = create_app(
            settings,
            discord,
            repositories_factory(session_factory),
            limiter=RateLimiter(redis_client),
            tokens=TokenService.from_settings(settings),
        )

        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, settings.host, settings.port)
        await site.start()
        logger.info(f"Listening on http://{settings.host}:{settings.port}")

        # Serve until cancelled
        await asyncio.Event().wait()

    except asyncio.CancelledError:
        logger.info("Shutdown requested")

    except Exception as e:
        logger.critical(f"Critical error in main: {e}")
        raise

    finally:
        logger.info("Starting cleanup process...")
        if runner is not None:
            await runner.cleanup()
        if discord is not None:
            await discord.close()
        await close_resources(engine, redis_client)

if __name__ == "__main__":
    try:
        asyncio.run(main())

    except KeyboardInterrupt:
        logger.info("Server shutdown initiated by user")

    except Exception as e:
        logger.critical(f"Fatal error: {e}")
        raise

    finally:
        logger.info("Server shutdown complete")
