"""Health check endpoint."""
from __future__ import annotations

import logging

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter, Response
from sqlalchemy import text

from app.config import get_settings
from app.db import get_engine
from app.services.mpesa_callbacks import secret_fingerprint

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger(__name__)


def _db_status() -> str:
    """Return 'ok' if the DB is reachable, 'error' otherwise."""

    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "ok"
    except Exception:  # noqa: BLE001
        logger.exception("DB health check failed")
        return "error"


def _expected_migration_head() -> str | None:
    try:
        config = Config("alembic.ini")
        script = ScriptDirectory.from_config(config)
        return script.get_current_head()
    except Exception:  # noqa: BLE001
        logger.exception("Failed to load Alembic head revision")
        return None


def _migrations_status() -> tuple[bool, str]:
    expected_head = _expected_migration_head()
    try:
        engine = get_engine()
        with engine.connect() as conn:
            current = conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
        if expected_head is None:
            return False, "unknown"
        if current == expected_head:
            return True, "up_to_date"
        return False, "out_of_date"
    except Exception:  # noqa: BLE001
        logger.exception("Migration check failed")
        return False, "unknown"


def _mpesa_status() -> dict[str, object]:
    settings = get_settings()
    missing = settings.missing_mpesa_credentials()
    if not missing:
        credentials = "ok"
    elif len(missing) == 4:
        credentials = "missing"
    else:
        credentials = "partial"
    return {
        "environment": settings.MPESA_ENVIRONMENT,
        "credentials": credentials,
        "callback_secret_configured": bool(settings.MPESA_CALLBACK_SECRET),
        "callback_secret_fingerprint": secret_fingerprint(settings.MPESA_CALLBACK_SECRET),
    }


@router.get("", summary="Health check")
def healthcheck(response: Response) -> dict[str, object]:
    response.headers["Cache-Control"] = "no-store"
    db_status = _db_status()
    db_ok = db_status == "ok"
    if db_ok:
        migration_ok, migration_status = _migrations_status()
    else:
        migration_ok, migration_status = False, "unknown"
    degraded = not (db_ok and migration_ok)
    return {
        "status": "degraded" if degraded else "ok",
        "db_ok": db_ok,
        "db_status": db_status,
        "migrations_ok": migration_ok,
        "migrations_status": migration_status,
        "mpesa": _mpesa_status(),
    }
