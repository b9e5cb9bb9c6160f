from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
import sentry_sdk
import logging
from app.config import settings
from app.api.v1 import shares, deliveries, files, groups, presence
from app.core.exceptions import FileShareError
from app.core.monitoring import setup_logging, PerformanceMiddleware
from app.core.rate_limit import limiter
from app.db.session import AsyncSessionLocal, engine
from app.services.delivery_tracker import DeliveryTracker, notifier_sender
from app.services.notifier import Notifier
from app.services.presence import PresenceService
from app.services.retry_scheduler import RetryScheduler

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)

# Initialize Sentry for error tracking
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=1.0 if settings.ENVIRONMENT == "development" else 0.1,
    )

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="File sharing with delivery tracking and presence-triggered retries.",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)

# Process-wide services
notifier = Notifier()
app.state.notifier = notifier
app.state.session_factory = AsyncSessionLocal
app.state.delivery_tracker = DeliveryTracker(
    sender=notifier_sender(notifier),
    max_retries=settings.DELIVERY_MAX_RETRIES,
)
app.state.retry_scheduler = RetryScheduler(AsyncSessionLocal, notifier)
app.state.presence = PresenceService(notifier, app.state.retry_scheduler)

@app.on_event("startup")
async def startup_event():
    """Initialize database on startup"""
    from app.db.base import Base
    from app import models  # noqa: F401  registers every table on Base.metadata

    logger.info("Initializing database...")

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        return

    # No socket survives a restart
    async with AsyncSessionLocal() as db:
        await app.state.presence.mark_all_offline(db)
    logger.info("Presence reset for a fresh process")

@app.on_event("shutdown")
async def shutdown_event():
    await app.state.retry_scheduler.shutdown()
    await app.state.notifier.drain()
    await engine.dispose()

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Global exception handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=jsonable_encoder({"detail": exc.errors(), "error_code": "VALIDATION_ERROR"})
    )

@app.exception_handler(FileShareError)
async def file_share_exception_handler(request: Request, exc: FileShareError):
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "error_code": "INTERNAL_ERROR"}
    )

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(PerformanceMiddleware)

# Health check endpoint
@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT
    }

# Include routers
app.include_router(shares.router, prefix=f"{settings.API_V1_PREFIX}/shares", tags=["Shares"])
app.include_router(deliveries.router, prefix=f"{settings.API_V1_PREFIX}/deliveries", tags=["Deliveries"])
app.include_router(files.router, prefix=f"{settings.API_V1_PREFIX}/files", tags=["Files"])
app.include_router(groups.router, prefix=f"{settings.API_V1_PREFIX}/groups", tags=["Groups"])
app.include_router(presence.router, prefix=f"{settings.API_V1_PREFIX}/presence", tags=["Presence"])

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
