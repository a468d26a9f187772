"""
Storefront Shipping Backend
FastAPI application entry point

- Public rate quoting and tracking, rate limited with SlowAPI
- Admin label purchase, shipment history and carrier config
- Error sanitization middleware for anything unhandled
- Request size limit
- Optional background tracking sync
"""
import logging
from datetime import datetime, timezone
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from storefront.api.routes import shipping, admin_shipping
from storefront.core.config import settings
from storefront.core.database import AsyncSessionLocal, create_shipping_tables
from storefront.core.error_handler import ErrorSanitizationMiddleware
from storefront.core.rate_limit import limiter, rate_limit_exceeded_handler
from storefront.jobs.tracking_sync import TrackingSyncRunner
from storefront.modules.shipping import CarrierFactory

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

tracking_sync = TrackingSyncRunner()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Optionally create the shipping tables, then run the tracking sync until shutdown."""
    carriers = ", ".join(code.value for code in CarrierFactory.get_registered_carriers())
    logger.info(f"Registered carriers: {carriers}")

    if settings.DB_CREATE_TABLES:
        await create_shipping_tables()

    if settings.TRACKING_SYNC_ENABLED:
        tracking_sync.start()
    else:
        logger.info("Tracking sync DISABLED via config")

    yield

    await tracking_sync.stop()


app = FastAPI(
    lifespan=lifespan,
    title=settings.APP_NAME,
    description="Multi-carrier rate quoting, label purchase and tracking.",
    version="1.0.0",
    docs_url="/docs" if not settings.is_production else None,
    redoc_url=None,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


# Request size limit (label requests carry at most 10 packages)
MAX_REQUEST_SIZE = 100 * 1024  # 100KB


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests that exceed the size limit."""

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > MAX_REQUEST_SIZE:
            logger.warning(
                f"Request size limit exceeded: {content_length} bytes on {request.url.path}"
            )
            return JSONResponse(
                status_code=413,
                content={
                    "error": "request_too_large",
                    "message": "Request body too large",
                },
            )
        return await call_next(request)


app.add_middleware(RequestSizeLimitMiddleware)

# Error sanitization (catches unhandled exceptions)
app.add_middleware(ErrorSanitizationMiddleware)

app.include_router(shipping.router, prefix="/api", tags=["Shipping"])
app.include_router(admin_shipping.router, prefix="/api", tags=["Admin - Shipping"])


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check with a DB ping. Returns 503 if the database is unreachable."""
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "tracking_sync": tracking_sync.running,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        health_status["database"] = f"error: {type(e).__name__}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    return health_status


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "storefront.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
