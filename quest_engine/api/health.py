"""
Liveness and readiness probes.

/healthz answers without touching anything. /readyz needs a loadable quest
catalog and, when a database is configured, a reachable database holding
every engine table.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from quest_engine.core.database import get_database_url, get_engine, metadata
from quest_engine.core.errors import AppError
from quest_engine.features.catalog.loader import load_catalog

logger = logging.getLogger("quest_engine")

root_router = APIRouter(tags=["health"])


def _not_ready(detail: str) -> JSONResponse:
    logger.warning(f"[readyz] {detail}")
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


def _missing_tables() -> list:
    inspector = inspect(get_engine())
    return [name for name in sorted(metadata.tables) if not inspector.has_table(name)]


@root_router.get("/healthz")
def healthz():
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    try:
        catalog = load_catalog()
    except AppError as exc:
        return _not_ready(f"quest catalog unavailable: {exc.code}")

    if not get_database_url():
        return {"status": "ok", "store": "memory", "quests": len(catalog.quests)}

    try:
        missing = _missing_tables()
    except SQLAlchemyError as exc:
        logger.error(f"[readyz] database check failed: {exc}")
        return _not_ready("database unreachable")
    if missing:
        return _not_ready(f"missing tables: {', '.join(missing)}")

    return {"status": "ok", "store": "sql", "quests": len(catalog.quests)}
