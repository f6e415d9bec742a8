"""Redis-backed checkpoint store."""

from __future__ import annotations

import logging

from redis.asyncio import Redis
from redis.exceptions import RedisError

from streamcouch.config import RedisSettings
from streamcouch.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


def generate_redis_url(settings: RedisSettings) -> str:
    """
    Build a connection URL of the form ``scheme://[:password@]host:port/db``.

    ``rediss`` is used when TLS is requested. The password segment is left
    out entirely when no password is configured.
    """
    scheme = "rediss" if settings.use_tls else "redis"
    auth = ""
    if settings.password is not None:
        auth = f":{settings.password.get_secret_value()}@"
    return f"{scheme}://{auth}{settings.host}:{settings.port}/{settings.db}"


class RedisSequenceStore:
    """
    Plain GET/SET checkpoint storage on a single Redis node.

    An optional prefix namespaces keys so several streams can share one
    Redis database.
    """

    def __init__(self, client: Redis, prefix: str | None = None) -> None:
        self._redis = client
        self._prefix = prefix

    @classmethod
    def from_settings(cls, settings: RedisSettings) -> "RedisSequenceStore":
        client = Redis.from_url(generate_redis_url(settings), decode_responses=True)
        logger.info(
            "using redis sequence store",
            extra={"host": settings.host, "port": settings.port, "db": settings.db},
        )
        return cls(client, prefix=settings.prefix)

    def _get_key(self, key: str) -> str:
        """Build the full Redis key for a stream."""
        if self._prefix:
            return f"{self._prefix}:{key}"
        return key

    async def get(self, key: str) -> str | None:
        try:
            value = await self._redis.get(self._get_key(key))
        except RedisError as e:
            raise StoreUnavailableError(f"redis GET failed: {e}") from e
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str) -> None:
        try:
            await self._redis.set(self._get_key(key), value)
        except RedisError as e:
            raise StoreUnavailableError(f"redis SET failed: {e}") from e

    async def close(self) -> None:
        await self._redis.aclose()
