import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.database import init_db
from app.core.errors import register_exception_handlers
from app.core.kv_store import state_store, sweep_periodically
from app.core.logging_config import setup_logging
from app.core.security import get_token_signer
from app.core.webhook_security import get_webhook_authenticator
from app.api.endpoints import auth, health, whatsapp_webhooks

# Configure logging
setup_logging(settings.LOG_LEVEL, settings.JSON_LOGS)
logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.

    Missing or weak secrets raise ConfigError here, so a misconfigured
    service never starts serving.
    """
    # Startup
    logger.info("Starting up WhatsApp Verify Auth API...")
    get_token_signer()
    get_webhook_authenticator()
    init_db()

    sweeper = asyncio.create_task(sweep_periodically(state_store, settings.SWEEP_INTERVAL_SECONDS))
    logger.info("Security state sweep scheduled")

    yield

    # Shutdown
    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    logger.info("Shutting down WhatsApp Verify Auth API...")


# Create FastAPI application
app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    description="Phone number verification over WhatsApp with cookie-based sessions",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", settings.CSRF_HEADER_NAME],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    for header, value in SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)
    if settings.COOKIE_SECURE:
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    if request.url.path.startswith(settings.API_V1_STR):
        response.headers["Cache-Control"] = "no-store"
    return response


register_exception_handlers(app)

# Include routers
app.include_router(auth.router, prefix=settings.API_V1_STR)
app.include_router(whatsapp_webhooks.router, prefix=settings.API_V1_STR)
app.include_router(health.router, prefix=settings.API_V1_STR)


@app.get("/")
async def root():
    """Root endpoint - API health check"""
    return {
        "message": "WhatsApp Verify Auth API",
        "version": "1.0.0",
        "status": "healthy"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,  # Enable auto-reload during development
        log_level="info"
    )
