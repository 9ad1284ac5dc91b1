"""
smsdesk/main.py

Purpose: Application entry point

- Initializes FastAPI app
- Loads configuration and logging
- Registers API routes
- Starts and stops the SMS queue worker with the application
- No business logic should be written here
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import time

from smsdesk.core.config import settings, validate_settings
from smsdesk.core.errors import add_exception_handlers
from smsdesk.core.logging import setup_logging, get_logger
from smsdesk.db.mongo import connect_to_mongo, close_mongo_connection, check_database_health
from smsdesk.db.indexes import create_indexes
from smsdesk.services.queue_service import sms_queue_service
from smsdesk.api import admin, campaigns, contact_lists, sms, webhook

# Initialize logging first
setup_logging()
logger = get_logger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("🚀 Starting SMSDesk application...")

    try:
        # Validate configuration
        logger.info("Validating configuration...")
        validate_settings()
        logger.info("✅ Configuration validated")

        # Connect to MongoDB
        logger.info("Connecting to MongoDB...")
        await connect_to_mongo()
        logger.info("✅ MongoDB connected")

        # Create database indexes
        logger.info("Creating database indexes...")
        await create_indexes()
        logger.info("✅ Database indexes created")

        # Start the queue worker
        if settings.SMS_QUEUE_ENABLED:
            await sms_queue_service.start()
        else:
            logger.info("SMS queue worker disabled (SMS_QUEUE_ENABLED=false)")

        logger.info("🎉 SMSDesk application started successfully!")
        logger.info(f"Environment: {settings.ENVIRONMENT}")
        logger.info(f"Debug Mode: {settings.DEBUG}")

    except Exception as e:
        logger.critical(f"Failed to start application: {str(e)}", exc_info=True)
        raise

    yield  # Application runs here

    # Shutdown
    logger.info("🛑 Shutting down SMSDesk application...")

    try:
        # Stop the queue worker
        await sms_queue_service.stop()
        logger.info("✅ SMS queue worker stopped")

        # Close MongoDB connection
        await close_mongo_connection()
        logger.info("✅ MongoDB connection closed")

        logger.info("👋 SMSDesk application shut down successfully")

    except Exception as e:
        logger.error(f"Error during shutdown: {str(e)}", exc_info=True)


# Create FastAPI app with lifespan
app = FastAPI(
    title="SMSDesk - SMS Campaign Back-Office",
    description="Multi-tenant SMS campaigns, single sends and delivery tracking",
    version=VERSION,
    lifespan=lifespan,
    debug=settings.DEBUG,
    docs_url="/docs" if settings.is_development else None,  # Disable docs in production
    redoc_url="/redoc" if settings.is_development else None,
)

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request timing middleware
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    """Add processing time header to all responses."""
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)

    # Log slow requests
    if process_time > 5.0:  # More than 5 seconds
        logger.warning(
            f"Slow request detected: {request.method} {request.url.path}",
            extra={"process_time": process_time}
        )

    return response


# Error envelopes for domain, HTTP and validation errors
add_exception_handlers(app)

# Register API routes
app.include_router(campaigns.router, prefix=settings.API_PREFIX, tags=["Campaigns"])
app.include_router(contact_lists.router, prefix=settings.API_PREFIX, tags=["Contacts"])
app.include_router(sms.router, prefix=settings.API_PREFIX, tags=["SMS"])
app.include_router(webhook.router, prefix=settings.API_PREFIX, tags=["Webhook"])
app.include_router(admin.router, prefix=settings.API_PREFIX, tags=["Admin"])


# Root endpoint
@app.get("/", tags=["Health"])
async def root():
    """Root endpoint - basic info."""
    return {
        "name": "SMSDesk API",
        "version": VERSION,
        "description": "SMS campaign back-office",
        "status": "running",
        "environment": settings.ENVIRONMENT
    }


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """
    Checks database connectivity and the queue worker.
    """
    health_status = {
        "status": "healthy",
        "timestamp": time.time(),
        "environment": settings.ENVIRONMENT,
        "version": VERSION,
        "checks": {}
    }

    try:
        db_healthy = await check_database_health()
        health_status["checks"]["database"] = "healthy" if db_healthy else "unhealthy"

        if not db_healthy:
            health_status["status"] = "degraded"
    except Exception as e:
        logger.error(f"Database health check failed: {str(e)}")
        health_status["checks"]["database"] = "unhealthy"
        health_status["status"] = "unhealthy"

    # Queue worker state
    if settings.SMS_QUEUE_ENABLED:
        health_status["checks"]["queue_worker"] = "running" if sms_queue_service.is_running else "stopped"
        if not sms_queue_service.is_running:
            health_status["status"] = "degraded"
    else:
        health_status["checks"]["queue_worker"] = "disabled"

    status_code = 200 if health_status["status"] == "healthy" else 503
    return JSONResponse(content=health_status, status_code=status_code)


@app.get("/ready", tags=["Health"])
async def readiness_check():
    """
    Readiness probe - indicates if app is ready to receive traffic.
    """
    try:
        db_healthy = await check_database_health()
        if db_healthy:
            return {"status": "ready"}
        else:
            return JSONResponse(
                status_code=503,
                content={"status": "not_ready", "reason": "database_unavailable"}
            )
    except Exception as e:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "reason": str(e)}
        )


@app.get("/live", tags=["Health"])
async def liveness_check():
    """
    Liveness probe - indicates if app is alive.
    """
    return {"status": "alive"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "smsdesk.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level=settings.LOG_LEVEL.lower()
    )
