"""Valkey client used for cross-instance coordination (job locks)."""

from __future__ import annotations

import asyncio

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from portfolio_analytics.core.config import settings
from portfolio_analytics.core.logging import get_logger


logger = get_logger("cache.client")

# One client per event loop; redis connections cannot cross loops
_clients: dict[int, Redis] = {}


def _loop_id() -> int:
    try:
        return id(asyncio.get_running_loop())
    except RuntimeError:
        return 0


async def get_valkey_client() -> Redis:
    """Get the Valkey client bound to the running event loop."""
    loop_id = _loop_id()
    client = _clients.get(loop_id)
    if client is None:
        pool = ConnectionPool.from_url(
            settings.valkey_url,
            max_connections=settings.valkey_max_connections,
            decode_responses=True,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
            health_check_interval=30,
        )
        client = Redis(connection_pool=pool)
        _clients[loop_id] = client
        logger.info("Valkey client initialized", extra={"loop_id": loop_id})
    return client


async def close_valkey_client() -> None:
    """Close the client of the running event loop, if any."""
    client = _clients.pop(_loop_id(), None)
    if client is not None:
        await client.aclose()
        await client.connection_pool.disconnect()
        logger.info("Valkey client closed")


async def valkey_healthcheck() -> bool:
    try:
        client = await get_valkey_client()
        return bool(await asyncio.wait_for(client.ping(), timeout=5.0))
    except (RedisError, OSError, asyncio.TimeoutError) as e:
        logger.warning(f"Valkey healthcheck failed: {e}")
        return False
