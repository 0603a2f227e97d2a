import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from coachbook.jobs.heartbeat import heartbeat_age_seconds

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


async def _database_status(request: Request) -> dict[str, Any]:
    session_factory = getattr(request.app.state, "db_session_factory", None)
    if session_factory is None:
        return {"ok": False, "message": "database session factory unavailable"}
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:  # noqa: BLE001
        logger.debug("database_check_failed", exc_info=exc)
        return {"ok": False, "message": "database check failed", "error": exc.__class__.__name__}
    return {"ok": True, "message": "database reachable"}


async def _scheduler_status(request: Request) -> dict[str, Any]:
    session_factory = getattr(request.app.state, "db_session_factory", None)
    app_settings = request.app.state.app_settings
    if session_factory is None:
        return {"ok": False, "age_seconds": None}
    try:
        age = await heartbeat_age_seconds(session_factory)
    except Exception as exc:  # noqa: BLE001
        logger.debug("heartbeat_check_failed", exc_info=exc)
        return {"ok": False, "age_seconds": None, "error": exc.__class__.__name__}
    return {
        "ok": age is not None and age <= app_settings.job_heartbeat_ttl_seconds,
        "age_seconds": age,
    }


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    database = await _database_status(request)
    scheduler = await _scheduler_status(request) if database.get("ok") else {"ok": False, "age_seconds": None}

    overall_ok = bool(database.get("ok"))
    payload = {
        "status": "ok" if overall_ok else "unhealthy",
        "database": database,
        "scheduler": scheduler,
    }
    return JSONResponse(status_code=200 if overall_ok else 503, content=payload)
