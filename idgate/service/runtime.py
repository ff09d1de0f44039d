from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from idgate.config import get_settings, reset_settings_cache
from idgate.logging import configure_logging, get_logger
from idgate.service.auth import AuthService
from idgate.service.hashing import Argon2Hasher
from idgate.service.tokens import TokenSigner
from idgate.service.users import UserService
from idgate.storage.common import DocumentStore
from idgate.storage.memory import MemoryCache, MemoryStore
from idgate.storage.postgres import PostgresStore
from idgate.storage.redis_cache import KeyValueCache, RedisCache
from idgate.storage.token_store import TokenStore
from idgate.storage.users import UserRepository

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for logging.

    redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the process-wide adapters and services for the FastAPI app.

    Backends are chosen here, once. Everything below receives them through
    the ``DocumentStore`` / ``KeyValueCache`` protocols.
    """

    def __init__(self):
        self.settings = get_settings()
        configure_logging(
            self.settings.log_level,
            json_output=self.settings.log_json,
            development_mode=self.settings.log_dev_mode,
        )
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            use_memory_cache=self.settings.use_memory_cache,
            test_mode=self.settings.test_mode,
        )

        self.store: DocumentStore = self._build_store()
        self.cache: KeyValueCache = self._build_cache()

        self.signer = TokenSigner.from_settings(self.settings)
        self.hasher = Argon2Hasher()
        self.tokens = TokenStore(
            self.cache,
            max_attempts=self.settings.token_revoke_max_attempts,
        )
        self.users = UserRepository(
            self.store,
            self.cache,
            ttl_seconds=self.settings.user_cache_ttl_seconds,
        )
        self.auth = AuthService(self.users, self.tokens, self.signer, self.hasher)
        self.user_service = UserService(self.users, self.tokens, self.hasher)

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            cache_type=type(self.cache).__name__,
            signing_key_id=self.signer.key_id,
        )

    def _build_store(self) -> DocumentStore:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store: DocumentStore = MemoryStore()
            else:
                store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self) -> KeyValueCache:
        if self.settings.use_memory_cache:
            logger.info("runtime_cache_initialized", cache_type="memory")
            return MemoryCache()

        cache = RedisCache(
            self.settings.redis_url,
            socket_timeout=self.settings.kv_operation_timeout_seconds,
            operation_timeout=self.settings.kv_operation_timeout_seconds,
        )
        try:
            cache.verify_connection()
        except Exception as exc:
            if not self.settings.test_mode:
                logger.error(
                    "runtime_cache_unreachable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                )
                raise RuntimeError(
                    "Redis is required for token state; start Redis or set "
                    "USE_MEMORY_CACHE=true for a single-process setup."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
                mode="TEST_MODE",
            )
            return MemoryCache()
        logger.info(
            "runtime_cache_initialized",
            cache_type="redis",
            redis_url=_mask_url_password(self.settings.redis_url),
        )
        return cache

    async def close(self) -> None:
        await self.cache.close()
        self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a freshly read environment. TEST_MODE only."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.store.close()
        runtime = Runtime()
        return runtime
