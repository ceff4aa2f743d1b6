from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from identitycore.config import Settings, get_settings
from identitycore.logging import get_logger
from identitycore.service.accounts import AccountService
from identitycore.service.audit import (
    AuditRecorder,
    AuditSink,
    LoggingAuditSink,
    StoreAuditSink,
)
from identitycore.service.invitations import InvitationService
from identitycore.service.notifier import EmailNotifier, Notifier
from identitycore.service.password_reset import PasswordResetService
from identitycore.service.passwords import CredentialVerifier, PasswordPolicy
from identitycore.service.permissions import PermissionResolver
from identitycore.service.rate_limit import (
    InMemoryRateLimiter,
    RateLimiter,
    RateLimitPolicy,
    RedisRateLimiter,
)
from identitycore.service.stores import IdentityStore
from identitycore.service.tokens import TokenService
from identitycore.storage.memory import MemoryStore
from identitycore.storage.postgres import PostgresStore
from identitycore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except Exception:
        return "***url_parse_error***"


class Runtime:
    """The identity service graph, built once at process start.

    Nothing here is global: create one ``Runtime`` and pass it (or the
    services it holds) to the code that needs them. Collaborators can be
    injected for tests.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[IdentityStore] = None,
        cache: Optional[RedisCache] = None,
        notifier: Optional[Notifier] = None,
        audit_sink: Optional[AuditSink] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()
        self.cache = cache if cache is not None else self._build_cache()
        self.limiter = self._build_limiter()

        self.verifier = CredentialVerifier.from_settings(self.settings)
        self.policy = PasswordPolicy.from_settings(self.settings)
        self.resolver = PermissionResolver(self.store)
        sinks = [audit_sink] if audit_sink is not None else [
            StoreAuditSink(self.store),
            LoggingAuditSink(),
        ]
        self.audit = AuditRecorder(sinks)
        self.notifier = notifier or EmailNotifier.from_settings(self.settings)

        self.accounts = AccountService(
            self.store, self.resolver, self.verifier, self.policy, self.settings
        )
        self.tokens = TokenService(
            self.store,
            self.resolver,
            self.verifier,
            self.policy,
            self.settings,
            audit=self.audit,
        )
        self.invitations = InvitationService(
            self.store,
            self.resolver,
            self.verifier,
            self.policy,
            self.notifier,
            self.settings,
        )
        self.password_reset = PasswordResetService(
            self.store,
            self.verifier,
            self.policy,
            self.limiter,
            self.notifier,
            self.settings,
            audit=self.audit,
        )
        logger.info(
            "runtime_init_completed",
            store_type=type(self.store).__name__,
            redis_enabled=self.cache is not None,
            email_configured=getattr(self.notifier, "is_configured", None),
        )

    def _build_store(self) -> IdentityStore:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store: IdentityStore = MemoryStore()
            else:
                store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self) -> Optional[RedisCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for shared rate limits; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=f"Running without Redis under {fallback_mode}; rate limits are per-process.",
            mode=fallback_mode,
        )
        return None

    def _build_limiter(self) -> RateLimiter:
        policy = RateLimitPolicy.password_reset(self.settings)
        if self.cache is not None:
            return RedisRateLimiter(self.cache, policy)
        return InMemoryRateLimiter(policy)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()
