from __future__ import annotations

"""Structured logging helpers for packing-list edits.

Provides:
- log_event_sync: append NDJSON events to logs/packing_list.ndjson
- log_event_db: best-effort row in audit_log
- clean_logs: remove the NDJSON file
"""

import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession


LOG_DIR = Path("logs")
NDJSON_PATH = LOG_DIR / "packing_list.ndjson"

logger = logging.getLogger("telas.packing.events")


def _ensure_dirs() -> None:
    LOG_DIR.mkdir(parents=True, exist_ok=True)


def make_correlation_id() -> str:
    return uuid.uuid4().hex


def _now_iso() -> str:
    return datetime.utcnow().isoformat() + "Z"


def log_event_sync(
    correlation_id: str,
    file_key: Optional[str],
    step: str,
    level: str = "INFO",
    message: Optional[str] = None,
    **fields: Any,
) -> None:
    obj: Dict[str, Any] = {
        "created_at": _now_iso(),
        "correlation_id": correlation_id,
        "file": file_key,
        "step": step,
        "level": level,
        "message": message,
    }
    obj.update(fields or {})
    line = json.dumps(obj, ensure_ascii=False, default=str)
    try:
        _ensure_dirs()
        with open(NDJSON_PATH, "a", encoding="utf-8") as f:
            f.write(line + "\n")
    except OSError:
        logger.debug("No se pudo escribir %s", NDJSON_PATH, exc_info=True)
    logger.log(logging._nameToLevel.get(level.upper(), logging.INFO), line)


async def log_event_db(
    db: Optional[AsyncSession],
    *,
    action: str,
    target: Optional[str],
    user_id: Optional[int] = None,
    ip: Optional[str] = None,
    **meta: Any,
) -> None:
    if db is None:
        return
    try:
        from db.models import AuditLog

        db.add(AuditLog(action=action, target=target, meta=meta or None, user_id=user_id, ip=ip))
        await db.commit()
    except SQLAlchemyError:
        logger.warning("No se pudo registrar auditoría %s %s", action, target, exc_info=True)
        try:
            await db.rollback()
        except SQLAlchemyError:
            pass


def clean_logs() -> None:
    try:
        if NDJSON_PATH.exists():
            NDJSON_PATH.unlink()
    except OSError:
        pass
