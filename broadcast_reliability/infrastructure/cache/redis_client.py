"""
Redis Client with Connection Pooling

Architecture:
    RedisClient (Public API)
        ├── ConnectionManager (Connection lifecycle)
        ├── OperationExecutor (Command execution with error mapping)
        └── HealthMonitor (Health checks and pool metrics)

Every store in the service (dead letters, analytics counters, delayed
retries) goes through this client so Redis failures surface as one of two
exceptions:
    - CacheConnectionError: Redis unreachable or timed out (retryable)
    - CacheKeyError: the command itself failed
"""

import time
from collections.abc import Awaitable
from typing import Any, TypeVar

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from broadcast_reliability.core.config.settings import get_settings
from broadcast_reliability.core.exceptions import CacheConnectionError, CacheKeyError
from broadcast_reliability.core.logging.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


# =============================================================================
# LAYER 1: CONNECTION MANAGEMENT
# Handles connection lifecycle and pooling
# =============================================================================


class ConnectionManager:
    """
    Manages Redis connection lifecycle and pooling.

    Pool Configuration:
    - Max connections: REDIS_MAX_CONNECTIONS
    - Socket timeout: REDIS_SOCKET_TIMEOUT
    - Health check interval: REDIS_HEALTH_CHECK_INTERVAL
    - Responses decoded to str
    """

    def __init__(self, settings):
        self._settings = settings
        self._pool: ConnectionPool | None = None
        self._client: redis.Redis | None = None
        self._is_connected = False

    async def connect(self) -> redis.Redis:
        """
        Establish connection to Redis with connection pooling.

        STAGE-REDIS.2: Connection establishment

        Returns:
            redis.Redis: Connected Redis client

        Raises:
            CacheConnectionError: If connection fails
        """
        if self._is_connected and self._client:
            return self._client

        try:
            self._pool = ConnectionPool(
                host=self._settings.redis.REDIS_HOST,
                port=self._settings.redis.REDIS_PORT,
                db=self._settings.redis.REDIS_DB,
                password=self._settings.redis.REDIS_PASSWORD,
                max_connections=self._settings.redis.REDIS_MAX_CONNECTIONS,
                socket_connect_timeout=self._settings.redis.REDIS_SOCKET_CONNECT_TIMEOUT,
                socket_timeout=self._settings.redis.REDIS_SOCKET_TIMEOUT,
                retry_on_timeout=True,
                health_check_interval=self._settings.redis.REDIS_HEALTH_CHECK_INTERVAL,
                decode_responses=True,
            )
            self._client = redis.Redis(connection_pool=self._pool)
            await self._client.ping()

            self._is_connected = True

            logger.info(
                "Redis connected successfully",
                stage="REDIS.2",
                host=self._settings.redis.REDIS_HOST,
                port=self._settings.redis.REDIS_PORT,
                max_connections=self._settings.redis.REDIS_MAX_CONNECTIONS,
            )

            return self._client

        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error("Failed to connect to Redis", stage="REDIS.2", error=str(e))
            raise CacheConnectionError(
                message=f"Failed to connect to Redis: {e}",
                details={
                    "host": self._settings.redis.REDIS_HOST,
                    "port": self._settings.redis.REDIS_PORT,
                },
            ) from e

    async def disconnect(self) -> None:
        """
        Close Redis connection and pool.

        STAGE-REDIS.3: Connection cleanup
        """
        if self._client:
            await self._client.aclose()

        if self._pool:
            await self._pool.disconnect()

        self._client = None
        self._pool = None
        self._is_connected = False

        logger.info("Redis disconnected", stage="REDIS.3")

    def get_client(self) -> redis.Redis | None:
        return self._client

    def get_pool(self) -> ConnectionPool | None:
        return self._pool

    def is_connected(self) -> bool:
        return self._is_connected


# =============================================================================
# LAYER 2: OPERATION EXECUTOR
# Executes commands and maps redis-py errors onto the cache exceptions
# =============================================================================


class OperationExecutor:
    """
    Executes Redis operations with consistent error handling.

    Error Handling Strategy:
    - Connection and timeout errors → CacheConnectionError
    - Any other RedisError → CacheKeyError
    - Each failure is logged with the command name as the stage
    """

    def __init__(self, redis_client: redis.Redis):
        self._redis = redis_client

    async def _run(self, command: str, call: Awaitable[T], **context) -> T:
        try:
            return await call
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error(
                f"Redis {command} failed: connection",
                stage=f"REDIS.{command}",
                error=str(e),
                **context,
            )
            raise CacheConnectionError(
                message=f"Redis {command} failed: {e}", details=context
            ) from e
        except RedisError as e:
            logger.error(
                f"Redis {command} failed",
                stage=f"REDIS.{command}",
                error=str(e),
                **context,
            )
            raise CacheKeyError(message=f"Redis {command} failed: {e}", details=context) from e

    # -------------------------------------------------------------------------
    # Basic Operations
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> str | None:
        return await self._run("GET", self._redis.get(key), key=key)

    async def set(
        self, key: str, value: str, ttl: int | None = None, nx: bool = False, xx: bool = False
    ) -> bool:
        """
        Set value in Redis.

        Returns:
            True if set; False when NX/XX prevented the write
        """
        result = await self._run(
            "SET", self._redis.set(key, value, ex=ttl, nx=nx, xx=xx), key=key
        )
        return bool(result)

    async def delete(self, *keys: str) -> int:
        return await self._run("DEL", self._redis.delete(*keys), keys=list(keys))

    async def exists(self, *keys: str) -> int:
        return await self._run("EXISTS", self._redis.exists(*keys), keys=list(keys))

    async def expire(self, key: str, ttl: int) -> bool:
        return await self._run("EXPIRE", self._redis.expire(key, ttl), key=key)

    async def incr(self, key: str) -> int:
        return await self._run("INCR", self._redis.incr(key), key=key)

    # -------------------------------------------------------------------------
    # Hash Operations (records and counters)
    # -------------------------------------------------------------------------

    async def hset(
        self,
        name: str,
        key: str | None = None,
        value: str | None = None,
        mapping: dict[str, Any] | None = None,
    ) -> int:
        """
        Set one field, or many with ``mapping``.

        Returns:
            Number of fields newly created
        """
        return await self._run(
            "HSET", self._redis.hset(name, key=key, value=value, mapping=mapping), name=name
        )

    async def hgetall(self, name: str) -> dict[str, str]:
        return await self._run("HGETALL", self._redis.hgetall(name), name=name)

    async def hincrby(self, name: str, key: str, amount: int = 1) -> int:
        return await self._run(
            "HINCRBY", self._redis.hincrby(name, key, amount), name=name, key=key
        )

    async def hincrbyfloat(self, name: str, key: str, amount: float) -> float:
        return await self._run(
            "HINCRBYFLOAT", self._redis.hincrbyfloat(name, key, amount), name=name, key=key
        )

    # -------------------------------------------------------------------------
    # Sorted Set Operations (indexes and delayed retries)
    # -------------------------------------------------------------------------

    async def zadd(self, name: str, mapping: dict[str, float], nx: bool = False) -> int:
        return await self._run("ZADD", self._redis.zadd(name, mapping, nx=nx), name=name)

    async def zrem(self, name: str, *members: str) -> int:
        return await self._run("ZREM", self._redis.zrem(name, *members), name=name)

    async def zrangebyscore(
        self,
        name: str,
        min_score: float | str,
        max_score: float | str,
        start: int | None = None,
        num: int | None = None,
        withscores: bool = False,
    ) -> list:
        """
        Members with scores in [min_score, max_score], ascending.

        ``start``/``num`` must be given together (LIMIT offset count).
        """
        return await self._run(
            "ZRANGEBYSCORE",
            self._redis.zrangebyscore(
                name, min_score, max_score, start=start, num=num, withscores=withscores
            ),
            name=name,
        )

    async def zrevrange(self, name: str, start: int, end: int) -> list[str]:
        return await self._run("ZREVRANGE", self._redis.zrevrange(name, start, end), name=name)

    async def zcard(self, name: str) -> int:
        return await self._run("ZCARD", self._redis.zcard(name), name=name)

    # -------------------------------------------------------------------------
    # Key Enumeration (slow path only)
    # -------------------------------------------------------------------------

    async def scan_keys(self, match: str, count: int = 100, limit: int | None = None) -> list[str]:
        """
        Collect keys matching ``match`` with SCAN, stopping after ``limit`` keys.

        SCAN walks the whole keyspace, so callers use it only as a fallback.
        """
        async def _collect() -> list[str]:
            keys: list[str] = []
            async for key in self._redis.scan_iter(match=match, count=count):
                keys.append(key)
                if limit is not None and len(keys) >= limit:
                    break
            return keys

        return await self._run("SCAN", _collect(), match=match)

    # -------------------------------------------------------------------------
    # Pub/Sub Operations
    # -------------------------------------------------------------------------

    async def publish(self, channel: str, message: str) -> int:
        """
        Publish a message to a channel.

        Returns:
            Number of subscribers that received the message
        """
        return await self._run("PUBLISH", self._redis.publish(channel, message), channel=channel)


# =============================================================================
# LAYER 3: HEALTH MONITORING
# =============================================================================


class HealthMonitor:
    """
    Monitors Redis health and connection pool metrics.

    Metrics Tracked:
    - Connection status
    - Ping latency
    - Pool utilization (warning above 80%)
    """

    def __init__(self, connection_manager: ConnectionManager, settings):
        self._conn_mgr = connection_manager
        self._settings = settings

    async def health_check(self) -> dict[str, Any]:
        """
        Perform health check on Redis connection.

        STAGE-REDIS.HEALTH: Redis health check

        Returns:
            Dict with health status and metrics
        """
        health = {
            "status": "healthy",
            "connected": self._conn_mgr.is_connected(),
            "host": self._settings.redis.REDIS_HOST,
            "port": self._settings.redis.REDIS_PORT,
            "pool_size": 0,
            "pool_utilization_pct": 0,
            "pool_warning": False,
            "ping_latency_ms": None,
        }

        try:
            client = self._conn_mgr.get_client()
            if not client:
                health["status"] = "unhealthy"
                health["error"] = "Client not initialized"
                return health

            start = time.perf_counter()
            await client.ping()
            health["ping_latency_ms"] = round((time.perf_counter() - start) * 1000, 2)

            pool = self._conn_mgr.get_pool()
            if pool:
                health["pool_size"] = pool.max_connections
                in_use = len(getattr(pool, "_in_use_connections", ()))
                utilization = 100.0 * in_use / pool.max_connections
                health["pool_utilization_pct"] = round(utilization, 1)

                if utilization > 80:
                    health["pool_warning"] = True
                    logger.warning(
                        "Redis pool utilization high",
                        pool_utilization=utilization,
                        max_connections=pool.max_connections,
                    )

        except RedisError as e:
            health["status"] = "unhealthy"
            health["error"] = str(e)

        return health


# =============================================================================
# LAYER 4: PUBLIC API
# =============================================================================


class RedisClient:
    """
    Async Redis client with connection pooling and health checks.

    Usage:
        client = RedisClient()
        await client.connect()

        await client.hincrby("broadcast_analytics:...", "success")
        ready = await client.zrangebyscore("dead_letter:ready", "-inf", "+inf", 0, 50)

        await client.disconnect()

    Stream commands (XADD, XREADGROUP, ...) are issued by the lane runtime
    directly on ``client`` and mapped onto queue errors there.
    """

    def __init__(self):
        """
        Initialize Redis client.

        STAGE-REDIS.1: Client initialization
        """
        self._settings = get_settings()

        self._conn_mgr = ConnectionManager(self._settings)
        self._executor: OperationExecutor | None = None
        self._health_monitor = HealthMonitor(self._conn_mgr, self._settings)

        logger.info(
            "Redis client initialized",
            stage="REDIS.1",
            host=self._settings.redis.REDIS_HOST,
            port=self._settings.redis.REDIS_PORT,
        )

    async def connect(self) -> None:
        """
        Establish connection to Redis with connection pooling.

        Raises:
            CacheConnectionError: If connection fails
        """
        client = await self._conn_mgr.connect()
        self._executor = OperationExecutor(client)

    async def disconnect(self) -> None:
        await self._conn_mgr.disconnect()
        self._executor = None

    @property
    def client(self) -> redis.Redis:
        """Raw redis.asyncio client."""
        client = self._conn_mgr.get_client()
        if client is None:
            raise CacheConnectionError("Redis client is not connected")
        return client

    def _require_executor(self) -> OperationExecutor:
        if self._executor is None:
            raise CacheConnectionError("Redis client is not connected")
        return self._executor

    # -------------------------------------------------------------------------
    # Delegate to OperationExecutor
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> str | None:
        return await self._require_executor().get(key)

    async def set(
        self, key: str, value: str, ttl: int | None = None, nx: bool = False, xx: bool = False
    ) -> bool:
        return await self._require_executor().set(key, value, ttl, nx, xx)

    async def delete(self, *keys: str) -> int:
        return await self._require_executor().delete(*keys)

    async def exists(self, *keys: str) -> int:
        return await self._require_executor().exists(*keys)

    async def expire(self, key: str, ttl: int) -> bool:
        return await self._require_executor().expire(key, ttl)

    async def incr(self, key: str) -> int:
        return await self._require_executor().incr(key)

    async def hset(
        self,
        name: str,
        key: str | None = None,
        value: str | None = None,
        mapping: dict[str, Any] | None = None,
    ) -> int:
        return await self._require_executor().hset(name, key, value, mapping)

    async def hgetall(self, name: str) -> dict[str, str]:
        return await self._require_executor().hgetall(name)

    async def hincrby(self, name: str, key: str, amount: int = 1) -> int:
        return await self._require_executor().hincrby(name, key, amount)

    async def hincrbyfloat(self, name: str, key: str, amount: float) -> float:
        return await self._require_executor().hincrbyfloat(name, key, amount)

    async def zadd(self, name: str, mapping: dict[str, float], nx: bool = False) -> int:
        return await self._require_executor().zadd(name, mapping, nx)

    async def zrem(self, name: str, *members: str) -> int:
        return await self._require_executor().zrem(name, *members)

    async def zrangebyscore(
        self,
        name: str,
        min_score: float | str,
        max_score: float | str,
        start: int | None = None,
        num: int | None = None,
        withscores: bool = False,
    ) -> list:
        return await self._require_executor().zrangebyscore(
            name, min_score, max_score, start, num, withscores
        )

    async def zrevrange(self, name: str, start: int, end: int) -> list[str]:
        return await self._require_executor().zrevrange(name, start, end)

    async def zcard(self, name: str) -> int:
        return await self._require_executor().zcard(name)

    async def scan_keys(self, match: str, count: int = 100, limit: int | None = None) -> list[str]:
        return await self._require_executor().scan_keys(match, count, limit)

    async def publish(self, channel: str, message: str) -> int:
        return await self._require_executor().publish(channel, message)

    async def health_check(self) -> dict[str, Any]:
        return await self._health_monitor.health_check()


# =============================================================================
# GLOBAL INSTANCE (SINGLETON PATTERN)
# =============================================================================

_redis_client: RedisClient | None = None


def get_redis_client() -> RedisClient:
    """
    Get the global Redis client instance (singleton).

    Returns:
        RedisClient: Global Redis client instance
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = RedisClient()

    return _redis_client


async def close_redis() -> None:
    """Close the global Redis client."""
    global _redis_client

    if _redis_client:
        await _redis_client.disconnect()
        _redis_client = None
