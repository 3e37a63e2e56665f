"""Main FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from reconciler.api import health, webhooks
from reconciler.api.health import VERSION
from reconciler.config import get_settings
from reconciler.db.session import init_db
from reconciler.services.reconciler import build_reconciler

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting generation job reconciler...")

    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    app.state.reconciler = build_reconciler(settings)
    if not settings.webhook_signing_enabled:
        logger.warning("WEBHOOK_SECRET is not set: webhook signatures will NOT be verified")

    logger.info("Generation job reconciler started successfully")

    yield

    logger.info("Shutting down generation job reconciler...")
    await app.state.reconciler.publisher.close()


app = FastAPI(
    title="Generation Job Reconciler",
    description="""
## Inference provider webhook reconciliation

Receives prediction callbacks from the inference provider and:
- **Classifies** the job (generation, upscale, edit, video or model training)
- **Transitions** its status, ignoring stale and duplicate deliveries
- **Persists** generated media into permanent object storage
- **Refunds** credits once when a job fails or is cancelled
- **Publishes** the new status to the owner's realtime channel

### Authentication
Callbacks are signed by the provider (`webhook-id`, `webhook-timestamp`,
`webhook-signature` headers) and verified against `WEBHOOK_SECRET`.
    """,
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


# Include routers
app.include_router(health.router)
app.include_router(webhooks.router)


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with service info."""
    return {
        "service": settings.app_name,
        "version": VERSION,
        "environment": settings.app_env,
        "docs": "/docs",
        "health": "/health",
        "webhook": "/v1/webhooks/replicate",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "reconciler.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
