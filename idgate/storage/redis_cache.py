from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional, Protocol, Set

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from idgate.storage.errors import StorageError


class KeyValueCache(Protocol):
    """Key-value capability used by the token store and the user cache.

    Values are strings; TTLs are milliseconds. Set-valued keys back the
    per-user token index.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_ms: int) -> None: ...

    async def delete(self, key: str) -> int: ...

    async def add_to_index(self, index_key: str, member: str, ttl_ms: int) -> None: ...

    async def remove_from_index(self, index_key: str, member: str) -> None: ...

    async def index_members(self, index_key: str) -> Set[str]: ...

    async def delete_indexed(self, key: str, index_key: str, member: str) -> int: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


class RedisCache:
    """Thin Redis wrapper for token state and cached user records."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _call(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except asyncio.TimeoutError as exc:
            raise StorageError(
                f"redis {operation} timed out", operation=operation, backend="redis"
            ) from exc
        except RedisError as exc:
            raise StorageError(
                f"redis {operation} failed", operation=operation, backend="redis"
            ) from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self.client.get(key))

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        await self._call("set", self.client.set(key, value, px=ttl_ms))

    async def delete(self, key: str) -> int:
        return int(await self._call("delete", self.client.delete(key)))

    async def add_to_index(self, index_key: str, member: str, ttl_ms: int) -> None:
        """Add a member and stretch the index TTL to cover it.

        NX sets a TTL on a fresh key; GT only ever extends an existing one, so
        the index outlives its longest-lived member.
        """
        pipe = self.client.pipeline(transaction=True)
        pipe.sadd(index_key, member)
        pipe.pexpire(index_key, ttl_ms, nx=True)
        pipe.pexpire(index_key, ttl_ms, gt=True)
        await self._call("add_to_index", pipe.execute())

    async def remove_from_index(self, index_key: str, member: str) -> None:
        await self._call("remove_from_index", self.client.srem(index_key, member))

    async def index_members(self, index_key: str) -> Set[str]:
        members = await self._call("index_members", self.client.smembers(index_key))
        return set(members or ())

    async def delete_indexed(self, key: str, index_key: str, member: str) -> int:
        """Delete a primary key and its index member in one MULTI/EXEC."""
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(key)
        pipe.srem(index_key, member)
        deleted, _ = await self._call("delete_indexed", pipe.execute())
        return int(deleted)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
