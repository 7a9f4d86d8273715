from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from multisession.api.error_handling import register_exception_handlers
from multisession.api.routes import router
from multisession.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from multisession.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", driver=runtime.settings.driver_type.value)

    yield

    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Multisession", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs with X-Request-ID (or a fresh id) and echo it on the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from multisession.service.runtime import get_runtime

    runtime = get_runtime()
    return {"status": "healthy", "driver": runtime.settings.driver_type.value}


register_exception_handlers(app)
app.include_router(router)
