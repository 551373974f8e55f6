"""
Async Redis service with connection pooling.

This module provides the single Redis connection used by the queue broker
and the Redis storage backends:
- Connection pooling for efficient resource usage
- Retries on timeout and periodic health checks
- Support for both standalone and cluster modes

All keys the pipeline writes carry hash tags, so the same client code works
against a standalone server and against Redis Cluster.
"""

import logging
from typing import Optional, Union

import redis.asyncio as aioredis
from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.cluster import RedisCluster
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from config import REDIS_CONFIG

logger = logging.getLogger(__name__)


class AsyncRedisService:
    """
    Async Redis service with connection pooling.

    Algorithm:
    1. Initialize connection settings from REDIS_CONFIG (overridable)
    2. Create a pooled standalone client or a cluster client on connect()
    3. Verify the connection with PING
    4. Close the client and pool on shutdown
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        password: Optional[str] = None,
        max_connections: Optional[int] = None,
        socket_connect_timeout: int = 5,
        socket_timeout: Optional[int] = None,
        decode_responses: bool = True,
        ssl_enabled: Optional[bool] = None,
        cluster_enabled: Optional[bool] = None,
        **kwargs,
    ):
        """
        Initialize async Redis service with connection pool parameters.

        Args:
            host: Redis host (defaults to REDIS_CONFIG)
            port: Redis port (defaults to REDIS_CONFIG)
            password: Redis password (optional)
            max_connections: Maximum connections in pool
            socket_connect_timeout: Connection timeout in seconds (default: 5)
            socket_timeout: Socket timeout in seconds
            decode_responses: Decode responses to strings (default: True)
            ssl_enabled: Enable TLS/SSL
            cluster_enabled: Enable cluster mode
            **kwargs: Additional Redis client parameters
        """
        self.host = host or REDIS_CONFIG["host"]
        self.port = port or REDIS_CONFIG["port"]
        self.password = password or REDIS_CONFIG["password"]
        self.max_connections = max_connections or REDIS_CONFIG["max_connections"]
        self.socket_connect_timeout = socket_connect_timeout
        self.socket_timeout = socket_timeout or REDIS_CONFIG["socket_timeout"]
        self.decode_responses = decode_responses
        self.ssl_enabled = REDIS_CONFIG["ssl_enabled"] if ssl_enabled is None else ssl_enabled
        self.cluster_enabled = REDIS_CONFIG["cluster_enabled"] if cluster_enabled is None else cluster_enabled
        self.kwargs = kwargs

        # Will be initialized in connect()
        self.pool: Optional[ConnectionPool] = None
        self.client: Optional[Union[Redis, RedisCluster]] = None

        logger.info(
            f"Initialized AsyncRedisService: host={self.host}, port={self.port}, "
            f"max_connections={self.max_connections}, cluster={self.cluster_enabled}"
        )

    async def connect(self) -> Union[Redis, RedisCluster]:
        """
        Establish async connection to Redis.

        Returns:
            Redis (or RedisCluster) async client instance

        Raises:
            ConnectionError: If connection fails
        """
        try:
            if self.cluster_enabled:
                cluster_params = {
                    "host": self.host,
                    "port": self.port,
                    "password": self.password,
                    "max_connections": self.max_connections,
                    "socket_connect_timeout": self.socket_connect_timeout,
                    "socket_timeout": self.socket_timeout,
                    "socket_keepalive": True,
                    "decode_responses": self.decode_responses,
                }
                if self.ssl_enabled:
                    cluster_params.update(ssl=True, ssl_cert_reqs="none", ssl_check_hostname=False)
                self.client = RedisCluster(**cluster_params, **self.kwargs)
            elif self.ssl_enabled:
                # URL-based pool supports TLS with connection pooling
                url = f"rediss://:{self.password or ''}@{self.host}:{self.port}/0"
                self.pool = ConnectionPool.from_url(
                    url,
                    max_connections=self.max_connections,
                    socket_connect_timeout=self.socket_connect_timeout,
                    socket_timeout=self.socket_timeout,
                    socket_keepalive=True,
                    decode_responses=self.decode_responses,
                    retry_on_timeout=True,
                    ssl_cert_reqs="none",  # Don't require certificate validation
                    ssl_check_hostname=False,  # Don't verify hostname
                    **self.kwargs,
                )
                self.client = aioredis.Redis(connection_pool=self.pool)
            else:
                self.pool = ConnectionPool(
                    host=self.host,
                    port=self.port,
                    password=self.password,
                    max_connections=self.max_connections,
                    socket_connect_timeout=self.socket_connect_timeout,
                    socket_timeout=self.socket_timeout,
                    socket_keepalive=True,
                    decode_responses=self.decode_responses,
                    retry_on_timeout=True,
                    retry_on_error=[ConnectionError, TimeoutError],
                    health_check_interval=30,  # Check connection health every 30 seconds
                    **self.kwargs,
                )
                self.client = aioredis.Redis(connection_pool=self.pool)

            # Test connection
            await self.client.ping()
            logger.info(f"Successfully connected to Redis at {self.host}:{self.port}")
            return self.client

        except RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise ConnectionError(f"Cannot connect to Redis at {self.host}:{self.port}: {e}")

    async def get_client(self) -> Union[Redis, RedisCluster]:
        """Get the async Redis client, connecting if necessary."""
        if not self.client:
            await self.connect()
        return self.client

    async def close(self):
        """
        Close the client and its pool.

        Should be called during application shutdown to clean up resources.
        """
        if self.client:
            await self.client.aclose()
            self.client = None
            logger.info("Closed Redis client")

        if self.pool:
            await self.pool.disconnect()
            self.pool = None
            logger.info("Disconnected connection pool")
