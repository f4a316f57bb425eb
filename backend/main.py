import asyncio
import logging
import logging.config

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.httpsredirect import HTTPSRedirectMiddleware

# ------------------------------------------------------------
# 1. CONFIG & LOGGING
# ------------------------------------------------------------
from servicepay.core.config import PaymentPolicy, settings
from servicepay.core.database import engine, init_models
from servicepay.core.dependencies import get_lifecycle_store
from servicepay.core.errors import register_exception_handlers
from servicepay.tasks.payment_cleanup import cleanup_loop, stop_cleanup_loop

LOG_LEVEL = "INFO" if settings.ENVIRONMENT == "production" else "DEBUG"

logging_config = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
        },
    },
    "loggers": {
        "uvicorn": {"handlers": ["console"], "level": LOG_LEVEL},
        "uvicorn.error": {"handlers": ["console"], "level": LOG_LEVEL},
        "uvicorn.access": {"handlers": ["console"], "level": LOG_LEVEL},
        "servicepay": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
    },
}

logging.config.dictConfig(logging_config)
logger = logging.getLogger("servicepay")


class CustomProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Honour X-Forwarded-For / X-Forwarded-Proto from the load balancer."""

    async def dispatch(self, request, call_next):
        x_forwarded_for = request.headers.get("x-forwarded-for")
        if x_forwarded_for:
            request.scope["client"] = (x_forwarded_for.split(",")[0].strip(), 0)

        x_forwarded_proto = request.headers.get("x-forwarded-proto")
        if x_forwarded_proto:
            request.scope["scheme"] = x_forwarded_proto

        return await call_next(request)


# ------------------------------------------------------------
# 2. FASTAPI APP
# ------------------------------------------------------------
app = FastAPI(
    title=f"{settings.PROJECT_NAME} API",
    description="Quotes, payment intents across card, crypto and bank rails, and admin reconciliation.",
    version="1.0.0",
    contact={"name": settings.PROJECT_NAME, "email": settings.SUPPORT_EMAIL},
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)

register_exception_handlers(app)

# ------------------------------------------------------------
# 3. CORS
# ------------------------------------------------------------
origins = [
    "http://127.0.0.1:3000",
    "http://localhost:3000",
    settings.FRONTEND_URL.rstrip("/"),
]

app.add_middleware(CustomProxyHeadersMiddleware)

if settings.ENVIRONMENT == "production":
    app.add_middleware(HTTPSRedirectMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ------------------------------------------------------------
# 4. ROUTERS (API ROUTES)
# ------------------------------------------------------------
from servicepay.routers import admin_router, payment_router, webhooks  # noqa: E402

app.include_router(payment_router.router, prefix="/api")
app.include_router(admin_router.router, prefix="/api")
app.include_router(webhooks.router, prefix="/api")


# ------------------------------------------------------------
# 5. SYSTEM ROUTES
# ------------------------------------------------------------
@app.get("/health", tags=["System"])
async def health_check():
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "healthy", "db": "connected"}
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "unhealthy", "error": str(e)})


# ------------------------------------------------------------
# 6. STARTUP
# ------------------------------------------------------------
@app.on_event("startup")
async def startup_event():
    logger.info(f"🚀 {settings.PROJECT_NAME} API started | Env: {settings.ENVIRONMENT} | Debug: {settings.DEBUG}")
    logger.info(f"📁 Frontend: {settings.FRONTEND_URL}")
    await init_models()
    logger.info("✅ Database tables ready")


@app.on_event("startup")
async def start_background_tasks():
    """Single-process deployments sweep in-process; multi-worker ones use celery beat."""
    if settings.CLEANUP_INTERVAL_MINUTES > 0:
        app.state.cleanup_task = asyncio.create_task(
            cleanup_loop(get_lifecycle_store(), PaymentPolicy.from_settings(settings))
        )
        logger.info(f"✅ Payment cleanup loop started (every {settings.CLEANUP_INTERVAL_MINUTES} min)")


# ------------------------------------------------------------
# 7. REQUEST LOGGING MIDDLEWARE
# ------------------------------------------------------------
@app.middleware("http")
async def log_requests(request: Request, call_next):
    client = request.client.host if request.client else "-"
    logger.info(f"➡️ {client} {request.method} {request.url.path}")
    try:
        response = await call_next(request)
    except Exception as e:
        logger.exception(f"💥 Exception during {request.method} {request.url.path}: {e}")
        raise
    logger.info(f"⬅️ {request.method} {request.url.path} → {response.status_code}")
    return response


@app.on_event("shutdown")
async def shutdown_event():
    await stop_cleanup_loop(getattr(app.state, "cleanup_task", None))
    await engine.dispose()
    logger.info("👋 Database connections closed")
