from __future__ import annotations

from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tokensmith.config import Settings, get_settings
from tokensmith.logging import get_logger
from tokensmith.service.auth import AuthService
from tokensmith.service.keyring import KeyRing
from tokensmith.storage.memory import MemoryStore
from tokensmith.storage.postgres import PostgresStore
from tokensmith.storage.redis_cache import MemoryCache, RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Builds the collaborators once and hands them to the service by reference."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store: Union[MemoryStore, PostgresStore]
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore()
            else:
                self.store = PostgresStore(self.settings.database_url)
                self.store.ensure_schema()
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._build_cache()

        self.keyring = KeyRing(
            self.settings.key_dir,
            key_size=self.settings.signing_key_bits,
            keys_ttl_seconds=self.settings.keys_cache_ttl_seconds,
            jwks_ttl_seconds=self.settings.jwks_cache_ttl_seconds,
        )
        self.keyring.initialize()

        self.auth = AuthService(self.store, self.cache, self.keyring, self.settings)
        logger.info("runtime_init_completed")

    def _build_cache(self) -> Union[RedisCache, SyncRedisCache, MemoryCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url, namespace=self.settings.cache_namespace
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url, namespace=self.settings.cache_namespace
                    )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for login throttling and token verification caches; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = (
            "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        )
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; attempt throttles and "
                "verification memos are process-local."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()
