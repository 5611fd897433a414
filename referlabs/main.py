"""
Refer Labs: referral attribution and campaign delivery.
Main application entry point.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from referlabs.api.ambassadors import router as ambassadors_router
from referlabs.api.attribution import router as attribution_router
from referlabs.api.conversions import router as conversions_router
from referlabs.api.dispatch import router as dispatch_router
from referlabs.api.redirect import router as redirect_router
from referlabs.api.webhooks import router as webhooks_router
from referlabs.middleware.rate_limit import close_rate_limit_store
from referlabs.middleware.security import SecurityHeadersMiddleware
from referlabs.models.database import dispose_engine
from referlabs.config import get_settings

import structlog

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer() if get_settings().debug else structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("referlabs_starting", site_url=get_settings().site_url,
                environment=get_settings().environment)
    yield
    await close_rate_limit_store()
    await dispose_engine()
    logger.info("referlabs_shutting_down")


app = FastAPI(
    title="Refer Labs",
    description="Referral attribution and campaign delivery.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if get_settings().debug else None,
    redoc_url="/redoc" if get_settings().debug else None,
    openapi_url="/openapi.json" if get_settings().debug else None,
)


# --- Error bodies: {"error": "..."} everywhere ---

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.info("request_validation_failed", path=request.url.path)
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid payload",
            "details": [
                {"loc": list(err.get("loc", [])), "msg": err.get("msg")}
                for err in exc.errors()
            ],
        },
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_exception", path=request.url.path,
                 error=str(exc), error_type=exc.__class__.__name__)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Security headers on every response
app.add_middleware(SecurityHeadersMiddleware)

# CORS: the marketing site and dashboard share the apex domain
ALLOWED_ORIGINS = ["*"] if get_settings().debug else [
    get_settings().site_url,
    "https://www.referlabs.com.au",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type"],
)

# --- Routes ---
app.include_router(redirect_router)
app.include_router(attribution_router)
app.include_router(conversions_router)
app.include_router(ambassadors_router)
app.include_router(dispatch_router)
app.include_router(webhooks_router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "referlabs", "version": VERSION}
