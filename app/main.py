from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app import db  # moteur/metadata centralisés
from app.config import AppInfo, Settings, get_settings
from app.core.logging import get_logger, setup_logging
import app.models  # enregistre les tables
from app.routers import get_api_router
from app.services.mpesa import close_mpesa_client
from app.services.mpesa_callbacks import secret_fingerprint
from app.utils.errors import error_response

logger = get_logger(__name__)
ALLOWED_CREATE_ENV = {"dev", "local", "test"}


def _current_settings() -> Settings:
    return get_settings()


def _configure_middlewares(fastapi_app: FastAPI) -> None:
    """Configure middleware using a fresh snapshot of the settings."""

    runtime_settings = _current_settings()
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime_settings.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-User-Id"],
    )

    if runtime_settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware)
        fastapi_app.add_route("/metrics", handle_metrics)

    if runtime_settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(dsn=runtime_settings.SENTRY_DSN, traces_sample_rate=0.2)


def _assert_mpesa_configuration(settings: Settings) -> None:
    """Fail fast on half-configured M-Pesa credentials; warn on a missing callback secret."""

    missing = settings.missing_mpesa_credentials()
    if missing and len(missing) < 4:
        logger.error(
            "M-Pesa credentials are partially configured; refusing to start.",
            extra={"env": settings.app_env, "missing": missing},
        )
        raise RuntimeError(f"Partial M-Pesa configuration, missing: {', '.join(missing)}")
    if missing:
        logger.warning(
            "M-Pesa credentials are not configured; payment initiation will fail.",
            extra={"env": settings.app_env},
        )

    env_lower = settings.app_env.lower()
    if not settings.MPESA_CALLBACK_SECRET:
        if env_lower != "dev":
            logger.warning(
                "MPESA_CALLBACK_SECRET is not set; callbacks are accepted without a token.",
                extra={"env": settings.app_env},
            )
    else:
        logger.info(
            "M-Pesa callback secret configured",
            extra={"secret": secret_fingerprint(settings.MPESA_CALLBACK_SECRET)},
        )
    if settings.mpesa_is_production and env_lower == "dev":
        logger.warning("MPESA_ENVIRONMENT=production while running in dev.", extra={"env": settings.app_env})


# -------- Lifespan --------
@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    settings = _current_settings()
    logger.info("Application startup", extra={"env": settings.app_env})
    _assert_mpesa_configuration(settings)

    db.init_engine()  # sync, idempotent
    env_lower = settings.app_env.lower()
    if settings.ALLOW_DB_CREATE_ALL and env_lower in ALLOWED_CREATE_ENV:
        logger.warning(
            "Running Base.metadata.create_all() because APP_ENV=%s and ALLOW_DB_CREATE_ALL=True",
            settings.app_env,
        )
        db.create_all()
    else:
        logger.info(
            "Skipping create_all(); use Alembic migrations. APP_ENV=%s, ALLOW_DB_CREATE_ALL=%s",
            settings.app_env,
            settings.ALLOW_DB_CREATE_ALL,
        )
    try:
        yield
    finally:
        close_mpesa_client()
        db.close_engine()
        logger.info("Application shutdown", extra={"env": settings.app_env})


app_info = AppInfo()

app = FastAPI(title=app_info.name, version=app_info.version, lifespan=lifespan)

# Middleware & routes
_configure_middlewares(app)
app.include_router(get_api_router())


# Handlers d’erreurs
@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", exc_info=exc)
    payload = error_response("INTERNAL_SERVER_ERROR", "An unexpected error occurred.")
    return JSONResponse(status_code=500, content=payload)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content: dict[str, Any] = detail
    else:
        content = error_response("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        "VALIDATION_ERROR",
        "Request body is missing fields or has invalid values.",
        {"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(status_code=400, content=payload)


__all__ = ["app"]
