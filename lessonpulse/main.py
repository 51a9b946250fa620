"""
FastAPI backend for LessonPulse
Lesson feedback, student wellbeing chat and school administration with server-side sessions,
rate limiting, CSRF protection and security-event logging
"""
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
import logging
import os

from lessonpulse import __version__
from lessonpulse.cache import close_cache, ping_cache
from lessonpulse.config import (
    ALLOWED_HOSTS,
    ALLOWED_ORIGINS,
    CSRF_HEADER,
    ENVIRONMENT,
    LOG_DIR,
    LOG_LEVEL,
    PLATFORM_ADMIN_EMAIL,
    PLATFORM_ADMIN_NAME,
    PLATFORM_ADMIN_PASSWORD,
    SERVICE_NAME,
)
from lessonpulse.database import init_db, ping_database
from lessonpulse.fingerprint import FINGERPRINT_HEADER
from lessonpulse.models import HealthCheck
from lessonpulse.services import account_service
from lessonpulse.api import accounts, chat, platform, school


def configure_logging():
    os.makedirs(LOG_DIR, exist_ok=True)
    logging.basicConfig(
        level=LOG_LEVEL,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(os.path.join(LOG_DIR, "app.log")),
            logging.StreamHandler()
        ]
    )


configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {SERVICE_NAME} {__version__} ({ENVIRONMENT})")
    await init_db()
    if PLATFORM_ADMIN_EMAIL and PLATFORM_ADMIN_PASSWORD:
        await account_service.ensure_platform_admin(
            PLATFORM_ADMIN_EMAIL.lower(), PLATFORM_ADMIN_PASSWORD, PLATFORM_ADMIN_NAME
        )
    else:
        logger.warning("PLATFORM_ADMIN_EMAIL/PLATFORM_ADMIN_PASSWORD not set, no platform admin seeded")
    yield
    logger.info(f"Stopping {SERVICE_NAME}")
    await close_cache()


app = FastAPI(
    title="LessonPulse API",
    description="Lesson feedback, wellbeing chat and school administration backend",
    version=__version__,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan
)

# The browser client reads rotated CSRF tokens and throttle hints from these headers
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Authorization", "Content-Type", CSRF_HEADER, FINGERPRINT_HEADER],
    expose_headers=[CSRF_HEADER, "Retry-After"],
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=ALLOWED_HOSTS)

for module_router in (accounts.router, school.router, chat.router, chat.ws_router,
                      platform.router, platform.pricing_router):
    app.include_router(module_router)


@app.get("/health", response_model=HealthCheck, tags=["Health"])
async def health_check():
    """Liveness check; touches neither the database nor Redis"""
    return {"status": "healthy", "service": SERVICE_NAME, "version": __version__}


@app.get("/ready", tags=["Health"])
async def readiness_check():
    """Readiness check: the database and Redis must both answer"""
    checks = {}
    for name, ping in (("database", ping_database), ("redis", ping_cache)):
        try:
            await ping()
            checks[name] = "ok"
        except Exception as e:
            logger.error(f"Readiness check for {name} failed: {e}")
            checks[name] = "unavailable"

    failed = [name for name, state in checks.items() if state != "ok"]
    if failed:
        raise HTTPException(status_code=503, detail=f"Service not ready: {', '.join(failed)} unavailable")
    return {"status": "ready", "checks": checks}


# Registered on the Starlette base class so routing 404/405 share the error body
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "status_code": exc.status_code},
        headers=getattr(exc, "headers", None)
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_encoder(exc.errors()), "status_code": 422}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error", "status_code": 500})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "lessonpulse.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=ENVIRONMENT == "development",
        log_level=LOG_LEVEL.lower()
    )
