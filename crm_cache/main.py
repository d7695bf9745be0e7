"""
CRM cache and backup service.

Two-tier cache with durable SQLite storage plus encrypted backup and
recovery, exposed over a small FastAPI surface.
"""

from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from crm_cache import __version__
from crm_cache.core.container import container, startup_services, shutdown_services
from crm_cache.core.logging import configure_logging, get_logger
from crm_cache.routers import backups, cache

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    configure_logging(container.settings())
    logger.info("Starting CRM cache service")
    await startup_services(container)
    yield
    await shutdown_services(container)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", error=f"{type(e).__name__}: {e}", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


def create_app() -> FastAPI:
    app = FastAPI(
        title="CRM Cache Service",
        version=__version__,
        description="Two-tier cache with backup and recovery",
        lifespan=lifespan,
        default_response_class=ORJSONResponse
    )
    app.add_middleware(CatchAllExceptionsMiddleware)

    app.include_router(cache.router)
    app.include_router(backups.router)

    @app.get("/health")
    async def health_check():
        return {
            "status": "OK",
            "service": "crm-cache",
            "version": __version__,
            "timestamp": datetime.now().isoformat()
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("crm_cache.main:app", host="127.0.0.1", port=8000)
