import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from clanhub.utils.constants import DB_SETTINGS, CACHE_SETTINGS
from .init_schema import init_schema
from .repository import Repositories

logger = logging.getLogger('ClanHub')

async def init_db(settings):
    """Apply the schema and return the SQLAlchemy engine and session factory"""
    try:
        await init_schema(settings)

        engine = create_sqlalchemy_engine(settings.sqlalchemy_url)
        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

        logger.info("Database initialized successfully")
        return engine, session_factory

    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise

async def init_redis(redis_url: str) -> redis.Redis:
    """Initialize Redis connection with retry logic"""
    for attempt in range(CACHE_SETTINGS['REDIS_RETRY_COUNT']):
        try:
            # Create Redis connection with timeout settings
            redis_client = redis.Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=CACHE_SETTINGS['REDIS_TIMEOUT'],
                socket_connect_timeout=CACHE_SETTINGS['REDIS_TIMEOUT'],
                retry_on_timeout=True,
                health_check_interval=30
            )

            # Test the connection
            await redis_client.ping()

            logger.info("Redis connection initialized successfully")
            return redis_client

        except redis.TimeoutError:
            logger.warning(f"Redis connection timeout (attempt {attempt + 1}/{CACHE_SETTINGS['REDIS_RETRY_COUNT']})")
            if attempt < CACHE_SETTINGS['REDIS_RETRY_COUNT'] - 1:
                await asyncio.sleep(CACHE_SETTINGS['REDIS_RETRY_DELAY'])
        except redis.ConnectionError as e:
            logger.error(f"Redis connection error (attempt {attempt + 1}): {e}")
            if attempt < CACHE_SETTINGS['REDIS_RETRY_COUNT'] - 1:
                await asyncio.sleep(CACHE_SETTINGS['REDIS_RETRY_DELAY'])
        except Exception as e:
            logger.error(f"Unexpected Redis error: {e}")
            raise

    raise ConnectionError("Failed to establish Redis connection after retries")

def create_sqlalchemy_engine(database_url: str):
    """Create SQLAlchemy async engine"""
    return create_async_engine(
        database_url,
        echo=DB_SETTINGS['ECHO'],
        pool_size=DB_SETTINGS['POOL_SIZE'],
        max_overflow=DB_SETTINGS['MAX_OVERFLOW'],
        pool_timeout=DB_SETTINGS['POOL_TIMEOUT'],
        pool_recycle=DB_SETTINGS['POOL_RECYCLE']
    )

def repositories_factory(session_factory: async_sessionmaker):
    """Per-request repository bundle sharing one session"""

    @asynccontextmanager
    async def open_repositories() -> AsyncIterator[Repositories]:
        async with session_factory() as session:
            yield Repositories.from_session(session)

    return open_repositories

async def close_resources(engine=None, redis_client: Optional[redis.Redis] = None) -> None:
    """Dispose of the engine and Redis connection"""
    if redis_client is not None:
        try:
            await redis_client.aclose()
            logger.info("Redis connection closed")
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}")
    if engine is not None:
        try:
            await engine.dispose()
            logger.info("Database engine disposed")
        except Exception as e:
            logger.error(f"Error disposing database engine: {e}")
