from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from chatrelay.config import get_settings, reset_settings_cache
from chatrelay.logging import get_logger, sanitize_error_message
from chatrelay.service.attachments import AttachmentNormalizer
from chatrelay.service.auth import AuthService
from chatrelay.service.orchestrator import ChatOrchestrator
from chatrelay.service.providers import build_provider
from chatrelay.service.quota import QuotaGuard
from chatrelay.service.stream_relay import build_stream_relay
from chatrelay.service.tasks import TaskSupervisor
from chatrelay.service.tools import ToolRegistry
from chatrelay.service.usage import UsageRecorder
from chatrelay.storage.memory import MemoryStore
from chatrelay.storage.postgres import PostgresStore
from chatrelay.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password of a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.memory_store_path)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc

        if not self.cache:
            if (
                self.settings.resumable_streams_enabled
                and not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                # resumption silently degrades; surface it loudly once
                logger.warning(
                    "redis_unavailable_passthrough_streams",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=sanitize_error_message(str(redis_error)) if redis_error else "redis_url_missing",
                )
            else:
                fallback_mode = (
                    "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
                )
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=sanitize_error_message(str(redis_error)) if redis_error else "redis_url_missing",
                    message=(
                        f"Running without Redis under {fallback_mode}; stream resumption "
                        "and session mirroring are in-process only."
                    ),
                    mode=fallback_mode,
                )

        self.supervisor = TaskSupervisor()
        self.relay = build_stream_relay(self.settings, self.cache, self.supervisor)
        self.provider = build_provider(self.settings)
        self.tools = ToolRegistry(self.settings)
        self.normalizer = AttachmentNormalizer(
            timeout_seconds=self.settings.attachment_fetch_timeout_seconds,
            max_bytes=self.settings.max_attachment_bytes,
            pdf_text_limit=self.settings.pdf_text_limit,
        )
        self.guard = QuotaGuard(self.store, self.settings)
        self.recorder = UsageRecorder(self.store)
        self.orchestrator = ChatOrchestrator(
            self.store,
            self.provider,
            settings=self.settings,
            guard=self.guard,
            normalizer=self.normalizer,
            tools=self.tools,
            recorder=self.recorder,
        )
        self.auth = AuthService(self.store, self.cache, self.settings)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            provider=getattr(self.provider, "name", type(self.provider).__name__),
            relay=type(self.relay).__name__,
            resumable_streams=self.relay.resumable,
            redis_enabled=self.cache is not None,
        )

    async def close(self) -> None:
        """Drain background turns, then release the store and cache."""
        await self.supervisor.shutdown(timeout=self.settings.shutdown_grace_seconds)
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("redis_close_failed", error=sanitize_error_message(str(exc)))
        self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking keeps the fast path lock free.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
