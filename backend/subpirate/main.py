"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from subpirate.core.config import settings
from subpirate.core.logging import setup_logging
from subpirate.core.otel import initialize_otel, instrument_app, setup_otel_logging
from subpirate.db.session import engine, init_db
from subpirate.services.stripe_gateway import build_gateway

# Import routers
from subpirate.api import billing, entitlements, webhooks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        if setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    gateway = build_gateway(settings)
    app.state.stripe_gateway = gateway
    logger.info(f"Stripe gateway ready ({'live' if settings.stripe_live_mode else 'test'} mode)")

    scheduler = None
    if settings.CATALOG_SYNC_INTERVAL_SECONDS > 0:
        from subpirate.tasks.scheduler import catalog_sync_scheduler_task
        scheduler = asyncio.create_task(catalog_sync_scheduler_task(gateway))
        logger.info(f"Catalog sync scheduler started (every {settings.CATALOG_SYNC_INTERVAL_SECONDS}s)")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if scheduler is not None:
        scheduler.cancel()
        with suppress(asyncio.CancelledError):
            await scheduler


# Create FastAPI app
app = FastAPI(
    title="SubPirate Billing",
    description="Stripe billing reconciliation for SubPirate",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument requests and queries with OpenTelemetry
if settings.OTEL_EXPORTER_OTLP_ENDPOINT:
    instrument_app(app, engine)

# CORS middleware
allowed_origins = [settings.FRONTEND_URL]
if settings.ENVIRONMENT == "development":
    allowed_origins.extend([
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
    ])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(webhooks.router)
app.include_router(billing.router)
app.include_router(entitlements.router)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "message": "An unexpected error occurred"}
    )


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
