from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from credvault.config import Settings, get_settings, reset_settings_cache
from credvault.logging import get_logger
from credvault.service.auth import SessionService
from credvault.service.email import EmailService
from credvault.service.identity import IdentityResolver
from credvault.service.oauth import OAuthClient
from credvault.service.passwords import PasswordHasher
from credvault.service.refresh_ledger import RefreshTokenLedger
from credvault.service.temporary_tokens import TemporaryTokenManager
from credvault.service.tokens import TokenCodec
from credvault.storage.memory import MemoryStore
from credvault.storage.models import utcnow
from credvault.storage.postgres import PostgresStore
from credvault.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

RateLimitResult = Union[bool, Tuple[bool, int, int]]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "<unparseable url>"
    if not parsed.password:
        return url
    host = parsed.hostname or ""
    if port:
        host = f"{host}:{port}"
    return urlunparse(parsed._replace(netloc=f"{parsed.username or ''}:***@{host}"))


def _build_store(settings: Settings):
    kind = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            return MemoryStore(fs_root=settings.shared_fs_root)
        return PostgresStore(settings.database_url, fs_root=settings.shared_fs_root)
    except Exception as exc:
        logger.error("runtime_store_init_failed", store_type=kind, error_type=type(exc).__name__, error=str(exc))
        raise


def _connect_cache(settings: Settings) -> Optional[Union[RedisCache, SyncRedisCache]]:
    """Connect to Redis, or decide whether running without it is acceptable."""
    failure: Optional[Exception] = None
    if settings.redis_url:
        # TestClient gives every request a fresh event loop, so tests use blocking calls
        cache_cls = SyncRedisCache if settings.test_mode else RedisCache
        try:
            cache = cache_cls(settings.redis_url)
            cache.verify_connection()
            return cache
        except (RedisError, OSError) as exc:
            failure = exc

    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is unavailable; rate limits and the profile cache need it. "
            "Set TEST_MODE or ALLOW_REDIS_FALLBACK_DEV to run with in-process limits."
        ) from failure
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(failure) if failure else "redis_url_missing",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return None


class _LocalBuckets:
    """In-process token buckets used when Redis is not configured."""

    def __init__(self) -> None:
        self._levels: Dict[str, Tuple[float, datetime]] = {}
        self._lock = asyncio.Lock()

    async def take(self, key: str, limit: int, window_seconds: int, cost: int) -> Tuple[bool, int, int]:
        rate = limit / float(window_seconds)
        now = utcnow()
        async with self._lock:
            level, updated = self._levels.get(key, (float(limit), now))
            level = min(float(limit), level + max(0.0, (now - updated).total_seconds()) * rate)
            if level < cost:
                return False, int(level), int((cost - level) / rate) or 1
            level -= cost
            self._levels[key] = (level, now)
            return True, int(level), 0


class Runtime:
    """Process-wide wiring of settings, storage and the credential services."""

    def __init__(self) -> None:
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = _build_store(self.settings)
        self.cache = _connect_cache(self.settings)
        self.local_buckets = _LocalBuckets()

        settings = self.settings
        self.hasher = PasswordHasher()
        self.codec = TokenCodec.from_settings(settings, clock=utcnow)
        self.temporary_tokens = TemporaryTokenManager(
            self.store,
            settings.jwt_secret,
            ttl=timedelta(minutes=settings.temporary_token_ttl_minutes),
        )
        self.ledger = RefreshTokenLedger(self.store, self.codec)
        self.identities = IdentityResolver(self.store)
        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            link_ttl_minutes=settings.temporary_token_ttl_minutes,
        )
        self.oauth = OAuthClient(settings, self.codec)
        self.auth = SessionService(
            self.store,
            self.cache,
            settings,
            hasher=self.hasher,
            codec=self.codec,
            temporary_tokens=self.temporary_tokens,
            ledger=self.ledger,
            identities=self.identities,
            mailer=self.email,
        )
        logger.info(
            "runtime_initialized",
            store_type="memory" if settings.use_memory_store else "postgres",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
        )

    def close_cache(self) -> None:
        if self.cache is None:
            return
        try:
            if isinstance(self.cache, SyncRedisCache):
                self.cache.client.close()
                return
            try:
                asyncio.get_running_loop().create_task(self.cache.close())
            except RuntimeError:
                asyncio.run(self.cache.close())
        except (RedisError, OSError) as exc:
            logger.debug("runtime_cache_close_failed", error=str(exc))


_runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        with _runtime_lock:
            if _runtime is None:
                _runtime = Runtime()
    return _runtime


def reset_runtime_for_tests() -> Runtime:
    """Drop the current runtime and build a new one from fresh settings.

    Refuses to run unless the reloaded settings have ``test_mode`` enabled.
    """
    global _runtime
    with _runtime_lock:
        if _runtime is not None:
            _runtime.close_cache()
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        _runtime = Runtime()
        return _runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> RateLimitResult:
    """Spend ``cost`` from the bucket for ``key``.

    A non-positive ``limit`` disables the check. With ``return_remaining`` the
    result is ``(allowed, remaining, retry_after_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache is not None:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    outcome = await runtime.local_buckets.take(key, limit, window_seconds, cost)
    return outcome if return_remaining else outcome[0]
