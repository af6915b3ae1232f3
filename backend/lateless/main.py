"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from lateless.core.config import settings
from lateless.core.logging import setup_logging
from lateless.core.otel import initialize_otel, instrument_fastapi, instrument_sqlalchemy
from lateless.core.security import log_api_access
from lateless.db.redis import get_redis_client
from lateless.db.session import Database

# Import routers
from lateless.api import invoices, workspaces
from lateless.api import stripe as stripe_router

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        logger.info(f"OpenTelemetry initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    owns_db = getattr(app.state, "db", None) is None
    if owns_db:
        logger.info("Connecting to database...")
        app.state.db = Database(settings.DATABASE_URL)
    instrument_sqlalchemy(app.state.db.engine)

    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    yield

    # Shutdown
    logger.info("Shutting down...")
    if owns_db:
        app.state.db.dispose()
        app.state.db = None


# Create FastAPI app
app = FastAPI(
    title="Lateless Billing",
    description="Invoice fees, checkout and Stripe payment reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument FastAPI with OpenTelemetry
instrument_fastapi(app)

# CORS middleware
allowed_origins = [settings.APP_URL]
if settings.ENVIRONMENT == "development":
    allowed_origins.extend([
        "http://localhost:3000",
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
app.include_router(stripe_router.router)
app.include_router(invoices.router)
app.include_router(workspaces.router)


@app.middleware("http")
async def access_log_middleware(request: Request, call_next):
    """API access logging"""
    status_code = 500
    error = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    except Exception as e:
        error = str(e)
        raise
    finally:
        if request.url.path not in ("/metrics", "/health"):
            log_api_access(request, status_code, error)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
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
