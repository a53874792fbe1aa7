# portfolio_api/services/infrastructure/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from portfolio_api.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RedisHandle:
    """
    Lazily-connected Redis handle with connection pooling.

    Constructed once per process and injected into the stores that need it;
    the pool is only created on first use.
    """

    def __init__(
        self,
        url: str,
        max_connections: int = 20,
        socket_timeout: float = 5.0,
        name: str = "primary",
    ):
        self.url = url
        self.max_connections = max_connections
        self.socket_timeout = socket_timeout
        self.name = name
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Create the connection pool and verify connectivity."""
        if self._initialized:
            return

        try:
            logger.info("Attempting Redis connection", handle=self.name, url_preview=self.url[:20] + "...")

            self.pool = ConnectionPool.from_url(
                self.url,
                max_connections=self.max_connections,
                retry_on_timeout=True,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", handle=self.name, result=result)

            self._initialized = True

        except Exception as e:
            logger.error("Failed to initialize Redis client", handle=self.name, error=str(e))
            self._initialized = False
            raise RuntimeError(f"Redis initialization failed for {self.name}") from e

    async def get_client(self) -> redis.Redis:
        if not self._initialized:
            await self.initialize()
        return self.client

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Redis client closed", handle=self.name)
        except Exception as e:
            logger.error("Error closing Redis client", handle=self.name, error=str(e))

    async def ping(self) -> bool:
        try:
            client = await self.get_client()
            return bool(await client.ping())
        except Exception as e:
            logger.error("Redis ping failed", handle=self.name, error=str(e))
            return False
