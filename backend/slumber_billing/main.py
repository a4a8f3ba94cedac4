"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from slumber_billing.api import subscriptions
from slumber_billing.core.config import settings
from slumber_billing.core.logging import setup_logging
from slumber_billing.core.otel import initialize_otel, instrument_fastapi, instrument_sqlalchemy
from slumber_billing.db.redis import get_redis_client
from slumber_billing.db.session import engine, init_db
from slumber_billing.tasks.event_replay import event_replay_task
from slumber_billing.tasks.subscription_expiry import subscription_expiry_task

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        logger.info("OpenTelemetry tracing initialized")
        instrument_sqlalchemy(engine)
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    replay_task = None
    if settings.EVENT_REPLAY_INTERVAL > 0:
        logger.info("Starting webhook event replay task...")
        replay_task = asyncio.create_task(event_replay_task())

    expiry_task = None
    if settings.SUBSCRIPTION_EXPIRY_INTERVAL > 0:
        logger.info("Starting subscription expiry task...")
        expiry_task = asyncio.create_task(subscription_expiry_task())

    yield

    # Shutdown
    logger.info("Shutting down...")
    if replay_task is not None:
        replay_task.cancel()
    if expiry_task is not None:
        expiry_task.cancel()


# Create FastAPI app
app = FastAPI(
    title="Slumber Billing",
    description="Subscription status reconciliation for Stripe billing",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument FastAPI with OpenTelemetry
instrument_fastapi(app)

app.include_router(subscriptions.router)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
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
