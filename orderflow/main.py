from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from orderflow.config import settings
from orderflow.api.v1.router import api_router
from orderflow.core.exceptions import OrderFlowError
from orderflow.database import init_db, async_session_factory
from orderflow.jobs.scheduler import start_scheduler, shutdown_scheduler
from orderflow.services.events import event_bus, log_event


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Configure logging
    - Create tables if missing
    - Subscribe the event log
    - Start background scheduler (when enabled)
    """
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    await init_db()
    event_bus.subscribe(None, log_event)

    if settings.SCHEDULER_ENABLED:
        start_scheduler()
        logger.info("Background scheduler started")

    yield

    # Shutdown
    if settings.SCHEDULER_ENABLED:
        shutdown_scheduler()
    await event_bus.drain()
    event_bus.clear()
    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Orders", "description": "Multi-seller order placement, fulfillment and returns"},
    {"name": "Payments", "description": "Payment gateway callbacks for instant methods"},
    {"name": "Admin", "description": "Receipt verification, settlement and reporting"},
    {"name": "Sellers", "description": "Seller payout accounts"},
]

API_DESCRIPTION = """
## Multi-seller gem marketplace order ledger

One checkout produces one order with one sub-order per seller. Each
sub-order moves through its own lifecycle; the order status is derived
from the sub-orders.

### Authentication

Every endpoint except the gateway webhook requires a JWT issued by the
auth service: `Authorization: Bearer <token>` with `sub` (user ID) and
`role` (buyer, seller, admin) claims.

### Error Codes

| Code | Description |
|------|-------------|
| 400 | Bad Request - Validation failed |
| 401 | Unauthorized - Invalid/expired token or webhook signature |
| 403 | Forbidden - Role not allowed |
| 404 | Not Found - Resource doesn't exist or is not visible |
| 409 | Conflict - Concurrent modification, retry |
| 422 | Unprocessable Entity - Business rule violation |
| 424 | Failed Dependency - Payout could not be sent |
| 500 | Internal Server Error |
"""

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


@app.exception_handler(OrderFlowError)
async def orderflow_exception_handler(request: Request, exc: OrderFlowError):
    """Domain errors carry their own HTTP status."""
    if exc.status_code >= 500 or exc.status_code == 424:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.message,
            "type": type(exc).__name__,
            "details": jsonable_encoder(exc.details),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Anything unexpected becomes a 500 without leaking internals."""
    logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    error_detail = {
        "error": str(exc) if settings.DEBUG else "Internal server error",
        "type": type(exc).__name__,
        "path": str(request.url.path),
        "method": request.method,
    }
    return JSONResponse(status_code=500, content=error_detail)


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint with database validation."""
    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        }
    }

    # Check database connectivity
    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except Exception as e:
        logger.error(f"Health check database error: {e}")
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    # Return 503 if unhealthy
    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status
