# chat_relay/main.py
"""
Relay service entry point.

    uvicorn chat_relay.main:app --host 0.0.0.0 --port 8000
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as aioredis
from fastapi import FastAPI

from stream_utils.config import REDIS_URL, configure_logging
from stream_utils.connection_pool import ConnectionPoolManager
from chat_relay.relay_handlers import TurnManager, setup_relay_routes

logger = logging.getLogger(__name__)

def create_redis_client(url: Optional[str] = REDIS_URL) -> Optional[aioredis.Redis]:
    """Redis client for snapshot broadcasts, or None when REDIS_URL is unset"""
    if not url:
        logger.info("Redis broadcast disabled (REDIS_URL not set)")
        return None

    redis_pool = aioredis.ConnectionPool.from_url(
        url,
        max_connections=20,
        decode_responses=True
    )
    logger.info("✅ Redis pool initialized")
    return aioredis.Redis(connection_pool=redis_pool)

def create_app(
    redis_pub=None,
    pool: Optional[ConnectionPoolManager] = None,
    turn_manager: Optional[TurnManager] = None,
    use_redis: bool = True,
) -> FastAPI:
    """Build the relay app; collaborators are injectable for tests"""
    configure_logging()

    pool = pool or ConnectionPoolManager()
    if redis_pub is None and use_redis:
        redis_pub = create_redis_client()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if redis_pub is not None:
            try:
                await redis_pub.ping()
                logger.info("✅ Redis reachable")
            except Exception as e:
                logger.warning(f"⚠️ Redis ping failed, broadcasts will be skipped on error: {e}")

        yield

        await pool.close_all()
        if redis_pub is not None:
            await redis_pub.aclose()
        logger.info("✅ Relay resources cleaned up")

    app = FastAPI(title="Legal chat stream relay", lifespan=lifespan)
    setup_relay_routes(
        app,
        redis_pub=redis_pub,
        pool=pool,
        turn_manager=turn_manager or TurnManager(),
    )
    return app

app = create_app()
