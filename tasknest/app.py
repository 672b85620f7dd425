from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tasknest.api.error_handling import register_exception_handlers
from tasknest.api.routes import router
from tasknest.config import get_settings
from tasknest.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so misconfiguration fails fast."""
    from tasknest.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Default to common local dev hosts
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


async def add_correlation_id(request, call_next):
    """Bind a correlation ID to the request for log tracing.

    Taken from the ``X-Request-ID`` header when the client sends one,
    otherwise generated, and echoed back on the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") and not request.url.path.endswith("/photo"):
        # Responses carry tokens and personal data
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    return response


async def health() -> JSONResponse:
    """Report whether the store and the shared filesystem are usable."""
    from tasknest.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    store_ok = await _run_bounded("store", runtime.store.verify_connection)
    checks["store"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    fs_path = Path(runtime.settings.shared_fs_root)

    def _fs_probe() -> None:
        if not fs_path.is_dir():
            raise FileNotFoundError(fs_path)
        probe = fs_path / ".health_check"
        probe.write_text(datetime.now(timezone.utc).isoformat())
        probe.unlink(missing_ok=True)

    fs_ok = await _run_bounded("filesystem", _fs_probe)
    checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}

    healthy = store_ok and fs_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app() -> FastAPI:
    app = FastAPI(title="TaskNest", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "API-Version"],
        max_age=3600,
    )
    app.middleware("http")(add_security_headers)
    app.middleware("http")(add_correlation_id)
    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"], tags=["health"])
    return app


app = create_app()
