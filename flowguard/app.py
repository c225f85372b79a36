from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from flowguard.api.error_handling import register_exception_handlers
from flowguard.api.routes import router
from flowguard.logging import get_logger

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; drain in-flight steps and close the store on shutdown."""
    from flowguard.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info(
        "app_started",
        version=__version__,
        backend=runtime.store.backend,
        persisted=runtime.store.persisted,
    )

    yield

    try:
        await runtime.shutdown()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


app = FastAPI(title="flowguard", version=__version__, lifespan=lifespan)

register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report the active checkpoint backend and whether it is durable."""
    from flowguard.service.runtime import get_runtime

    runtime = get_runtime()
    status = "ok" if runtime.store.persisted else "degraded"
    return {
        "status": status,
        "version": __version__,
        "store": runtime.store.backend,
        "persisted": runtime.store.persisted,
    }
