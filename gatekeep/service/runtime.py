from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from gatekeep.config import Settings, StoreBackend, get_settings, reset_settings_cache
from gatekeep.logging import get_logger
from gatekeep.service.auth import AuthService
from gatekeep.service.email import EmailService
from gatekeep.service.lockout import LockoutGuard
from gatekeep.service.passwords import SecretHasher
from gatekeep.service.recovery import RecoveryFlow
from gatekeep.service.tokens import TokenIssuer
from gatekeep.storage.memory import MemoryStore
from gatekeep.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***``."""
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


def build_store(settings: Settings) -> Union[MemoryStore, RedisStore]:
    if settings.store_backend == StoreBackend.REDIS:
        store = RedisStore(settings.redis_url, socket_timeout=settings.store_timeout_seconds)
        store.verify_connection()
        return store
    return MemoryStore(fs_root=settings.state_dir if settings.persist_memory_store else None)


def build_email(settings: Settings) -> EmailService:
    return EmailService(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=(
            settings.smtp_password.get_secret_value() if settings.smtp_password else None
        ),
        smtp_use_tls=settings.smtp_use_tls,
        from_email=settings.email_from_address,
        from_name=settings.email_from_name,
        timeout=settings.notifier_timeout_seconds,
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: Union[MemoryStore, RedisStore, None] = None,
        notifier=None,
        clock=None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            store_backend=self.settings.store_backend.value,
            test_mode=self.settings.test_mode,
        )
        try:
            self.store = store if store is not None else build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_backend=self.settings.store_backend.value,
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
            )
            raise
        logger.info("runtime_store_initialized", store_type=type(self.store).__name__)

        clock_kwargs = {"clock": clock} if clock is not None else {}
        self.email = notifier if notifier is not None else build_email(self.settings)
        if not getattr(self.email, "is_configured", True):
            logger.warning("email_not_configured", message="reset codes will not leave this host")

        self.hasher = SecretHasher(
            time_cost=self.settings.argon2_time_cost,
            memory_cost=self.settings.argon2_memory_cost,
            parallelism=self.settings.argon2_parallelism,
        )
        self.tokens = TokenIssuer(
            self.settings.jwt_secret.get_secret_value(),
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            ttl=timedelta(seconds=self.settings.token_ttl_seconds),
            refresh_ratio=self.settings.token_refresh_ratio,
            leeway_seconds=self.settings.token_leeway_seconds,
            **clock_kwargs,
        )
        self.lockout = LockoutGuard(
            self.store,
            threshold=self.settings.lockout_threshold,
            lock_duration=timedelta(seconds=self.settings.lockout_seconds),
            store_timeout=self.settings.store_timeout_seconds,
            **clock_kwargs,
        )
        self.recovery = RecoveryFlow(
            self.store,
            self.hasher,
            self.email,
            code_ttl=timedelta(minutes=self.settings.reset_code_ttl_minutes),
            min_password_length=self.settings.min_password_length,
            app_name=self.settings.app_name,
            store_timeout=self.settings.store_timeout_seconds,
            notifier_timeout=self.settings.notifier_timeout_seconds,
            **clock_kwargs,
        )
        self.auth = AuthService(
            self.store,
            self.hasher,
            self.tokens,
            self.lockout,
            self.recovery,
            min_password_length=self.settings.min_password_length,
            store_timeout=self.settings.store_timeout_seconds,
            diagnostic_errors=self.settings.diagnostic_errors,
            **clock_kwargs,
        )
        logger.info("runtime_init_complete")

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(new_runtime: Runtime) -> Runtime:
    """Install a pre-built runtime, e.g. one wired with a test clock."""
    global runtime
    with _runtime_lock:
        if runtime is not None and runtime is not new_runtime:
            runtime.close()
        runtime = new_runtime
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton from a fresh read of the environment."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                logger.warning("runtime_close_failed", error_type=type(exc).__name__)
        reset_settings_cache()
        runtime = Runtime()
        return runtime
