"""Redis connection factory for the change feed.

Supports standalone Redis (development/self-hosted) and Redis Sentinel (HA
deployments). Configuration is driven by REDIS_* environment variables so the
same code runs in every deployment.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from redis.asyncio import Redis
from redis.asyncio.sentinel import Sentinel

from consult_core_lib.utils import service_startup_retry

logger = logging.getLogger(__name__)

DEFAULT_SENTINEL_PORT = 26379


def _parse_sentinel_hosts(hosts_str: str) -> List[Tuple[str, int]]:
    """Parse comma-separated sentinel host:port string.

    Example:
        >>> _parse_sentinel_hosts("sentinel1:26379,sentinel2")
        [('sentinel1', 26379), ('sentinel2', 26379)]
    """
    sentinels = []

    for host_port in hosts_str.split(","):
        host_port = host_port.strip()
        if not host_port:
            continue

        if ":" in host_port:
            host, port_str = host_port.rsplit(":", 1)
            sentinels.append((host, int(port_str)))
        else:
            sentinels.append((host_port, DEFAULT_SENTINEL_PORT))

    return sentinels


@dataclass
class RedisConnectionConfig:
    """Redis connection parameters.

    Environment Variables:
        REDIS_MODE: "standalone" (default) or "sentinel"
        REDIS_HOST / REDIS_PORT: standalone address (default: localhost:6379)
        REDIS_DB: database index (default: 0)
        REDIS_PASSWORD: password (optional)
        REDIS_SENTINEL_HOSTS: comma-separated "host:port" pairs (sentinel mode)
        REDIS_MASTER_SET: sentinel master set name (default: "mymaster")
    """

    mode: str = "standalone"
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    sentinels: List[Tuple[str, int]] = field(default_factory=list)
    master_set: str = "mymaster"

    @classmethod
    def from_env(cls) -> "RedisConnectionConfig":
        mode = os.getenv("REDIS_MODE", "standalone").lower()
        sentinel_hosts = os.getenv("REDIS_SENTINEL_HOSTS", "")

        if mode == "sentinel" and not _parse_sentinel_hosts(sentinel_hosts):
            raise ValueError(
                "REDIS_SENTINEL_HOSTS environment variable is required for Sentinel mode"
            )

        return cls(
            mode=mode,
            host=os.getenv("REDIS_HOST", "localhost"),
            port=int(os.getenv("REDIS_PORT", "6379")),
            db=int(os.getenv("REDIS_DB", "0")),
            password=os.getenv("REDIS_PASSWORD") or None,
            sentinels=_parse_sentinel_hosts(sentinel_hosts),
            master_set=os.getenv("REDIS_MASTER_SET", "mymaster"),
        )


@service_startup_retry
async def _verify_redis_connection(client: Redis) -> None:
    """Verify Redis connection with retry logic."""
    await client.ping()
    logger.info("Redis connection verified")


async def get_redis_client(
    config: Optional[RedisConnectionConfig] = None,
    health_check_interval: int = 30,
) -> Redis:
    """Get Redis client with automatic Sentinel/Standalone selection.

    Args:
        config: Connection parameters (default: RedisConnectionConfig.from_env())
        health_check_interval: Health check interval in seconds (default: 30)

    Returns:
        Async Redis client with decoded string responses

    Raises:
        ValueError: If Sentinel mode is configured without sentinel hosts
        ConnectionError: If Redis connection fails after retries
    """
    config = config or RedisConnectionConfig.from_env()
    logger.info(f"Initializing Redis client in {config.mode} mode")

    if config.mode == "sentinel":
        if not config.sentinels:
            raise ValueError("Sentinel mode requires at least one sentinel host")

        logger.info(
            f"Connecting to Redis Sentinel: master={config.master_set}, "
            f"sentinels={config.sentinels}"
        )
        sentinel_client = Sentinel(
            config.sentinels,
            sentinel_kwargs={"password": config.password} if config.password else {},
            socket_keepalive=True,
            health_check_interval=health_check_interval,
        )
        # Master connection follows failover automatically
        redis_client = sentinel_client.master_for(
            config.master_set,
            db=config.db,
            password=config.password,
            decode_responses=True,
            socket_keepalive=True,
            health_check_interval=health_check_interval,
        )
    else:
        logger.info(f"Connecting to standalone Redis: {config.host}:{config.port}/{config.db}")
        redis_client = Redis(
            host=config.host,
            port=config.port,
            db=config.db,
            password=config.password,
            decode_responses=True,
            socket_keepalive=True,
            health_check_interval=health_check_interval,
            socket_connect_timeout=5,
        )

    await _verify_redis_connection(redis_client)
    logger.info(f"Redis connection established ({config.mode})")
    return redis_client
