from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tasknest.config import Settings, get_settings, reset_settings_cache
from tasknest.logging import get_logger
from tasknest.service.accounts import AccountProvisioner
from tasknest.service.auth import AuthService
from tasknest.service.email import EmailService
from tasknest.service.hashing import SecretHasher
from tasknest.service.profiles import ProfileService
from tasknest.service.tasks import TaskService
from tasknest.service.tokens import TokenSigner
from tasknest.service.verification import VerificationEngine
from tasknest.storage.memory import MemoryStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
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


def _build_store(settings: Settings):
    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.shared_fs_root)
    # psycopg is only needed when a database is configured
    from tasknest.storage.postgres import PostgresStore

    return PostgresStore(settings.database_url, fs_root=settings.shared_fs_root)


class Runtime:
    """Holds singleton service instances for the FastAPI app.

    Every collaborator is built here and passed to the services that use
    it; nothing reaches for a module-level client.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = _build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.hasher = SecretHasher(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_cost,
            parallelism=self.settings.password_hash_parallelism,
        )
        self.signer = TokenSigner(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        if not self.email.is_configured:
            logger.warning(
                "email_not_configured",
                message="Codes will be written to the server log instead of being emailed.",
            )
        self.verification = VerificationEngine(
            self.store,
            self.hasher,
            self.email,
            verification_ttl=timedelta(minutes=self.settings.verification_code_ttl_minutes),
            reset_ttl=timedelta(minutes=self.settings.reset_code_ttl_minutes),
        )
        self.accounts = AccountProvisioner(
            self.store,
            self.hasher,
            self.verification,
            default_avatar_url=self.settings.default_avatar_url,
        )
        self.auth = AuthService(
            self.store,
            self.hasher,
            self.signer,
            token_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            require_verification=self.settings.require_email_verification,
        )
        self.profiles = ProfileService(
            self.store,
            fs_root=self.settings.shared_fs_root,
            max_avatar_bytes=self.settings.max_avatar_bytes,
        )
        self.tasks = TaskService(self.store)
        logger.info("runtime_init_completed")

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close:
            close()


runtime: Runtime | None = None

_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
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
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
