"""
Async Redis client with connection pooling and retry.

Redis is the shared store for state that must be consistent across API
and worker instances: notification delivery claims and rate limit
counters. Keys always carry a TTL.
"""

from typing import Optional, Union

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from tradeflow.core.config import get_settings
from tradeflow.core.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """
    Thin async Redis wrapper with explicit connect/disconnect.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        max_connections: Optional[int] = None,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
    ):
        settings = get_settings()
        self._url = url or settings.redis_url
        self._max_connections = max_connections or settings.redis_max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout

        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None

    @staticmethod
    def sanitize_url(url: str) -> str:
        """Hide credentials before logging a URL."""
        protocol, sep, rest = url.partition("://")
        if sep and "@" in rest:
            return f"{protocol}://***@{rest.split('@', 1)[1]}"
        return url

    async def connect(self) -> None:
        """
        Create the pool and verify connectivity with PING.

        Raises:
            ConnectionError: If Redis is unreachable
        """
        if self._client is not None:
            return

        self._pool = ConnectionPool.from_url(
            self._url,
            max_connections=self._max_connections,
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=self._socket_connect_timeout,
            retry=Retry(ExponentialBackoff(base=0.1, cap=2.0), retries=3),
            decode_responses=True,
        )
        client = Redis(connection_pool=self._pool)

        try:
            await client.ping()
        except (ConnectionError, TimeoutError) as e:
            logger.error(
                "Failed to connect to Redis",
                error=str(e),
                url=self.sanitize_url(self._url),
            )
            await client.aclose()
            await self._pool.aclose()
            self._pool = None
            raise ConnectionError(f"Redis connection failed: {e}") from e

        self._client = client
        logger.info("Redis connection established", url=self.sanitize_url(self._url))

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None

    async def health_check(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            logger.warning("Redis health check failed", error=str(e))
            return False

    def _ensure_connected(self) -> Redis:
        if self._client is None:
            raise ConnectionError("Redis client is not connected")
        return self._client

    async def set(
        self,
        key: str,
        value: Union[str, int],
        ex: Optional[int] = None,
        nx: bool = False,
    ) -> bool:
        """
        SET with optional expiry and NX.

        Returns:
            True if the value was written; False when ``nx`` found the key
        """
        client = self._ensure_connected()
        try:
            return bool(await client.set(key, value, ex=ex, nx=nx))
        except RedisError as e:
            logger.error("Redis SET failed", key=key, error=str(e))
            raise

    async def delete(self, *keys: str) -> int:
        client = self._ensure_connected()
        try:
            return await client.delete(*keys)
        except RedisError as e:
            logger.error("Redis DELETE failed", keys=keys, error=str(e))
            raise


class CacheKeyManager:
    """Namespaced key builder."""

    def __init__(self, namespace: str = "tradeflow"):
        self.namespace = namespace

    def make_key(self, *parts: Union[str, int]) -> str:
        """
        Example:
            >>> CacheKeyManager("app").make_key("notify", "abc", "sent")
            'app:notify:abc:sent'
        """
        return ":".join([self.namespace] + [str(part) for part in parts if part])

    def notification_claim_key(self, order_id: str, event: str) -> str:
        return self.make_key("notify", order_id, event)


_redis_client: Optional[RedisClient] = None


async def get_redis_client() -> RedisClient:
    """
    Get or create the connected process-wide client.

    Raises:
        ConnectionError: If Redis connection fails
    """
    global _redis_client

    if _redis_client is None:
        client = RedisClient()
        await client.connect()
        _redis_client = client

    return _redis_client


async def close_redis_client() -> None:
    global _redis_client

    if _redis_client is not None:
        await _redis_client.disconnect()
        _redis_client = None
