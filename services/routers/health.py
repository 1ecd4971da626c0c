# NG-HEADER: Nombre de archivo: health.py
# NG-HEADER: Ubicación: services/routers/health.py
# NG-HEADER: Descripción: Endpoints de healthcheck y estado de dependencias.
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Endpoints de health.

- Liveness básico (`/health`)
- Conectividad DB/Redis/S3 (`/health/db`, `/health/redis`, `/health/storage`)
- Resumen general (`/health/summary`)
"""

from __future__ import annotations

import time
from typing import Any, Dict

from fastapi import APIRouter, Depends
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from telas_core.config import settings
from db.session import get_session
from services.auth import require_admin
from services.cache import ResponseCache
from services.deps import get_cache, get_store
from services.storage.s3 import ObjectStore, StorageError


router = APIRouter(prefix="/health", tags=["health"])
START_TIME = time.monotonic()


def _status(ok: bool, detail: str | None = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {"ok": ok}
    if detail:
        out["detail"] = detail
    return out


@router.get("")
async def health_root() -> Dict[str, str]:
    """Liveness simple del backend (si responde, está vivo)."""
    return {"status": "ok"}


@router.get("/db")
async def health_db(db: AsyncSession = Depends(get_session)) -> Dict[str, Any]:
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return _status(False, detail=str(e))
    return _status(True)


@router.get("/redis")
async def health_redis(cache: ResponseCache = Depends(get_cache)) -> Dict[str, Any]:
    """Sin REDIS_URL el cache queda deshabilitado y se informa como omitido."""
    if not cache.enabled:
        return _status(False, detail="skipped: REDIS_URL no configurada")
    try:
        return _status(bool(await cache.client.ping()))
    except RedisError as e:
        return _status(False, detail=str(e))


@router.get("/storage", dependencies=[Depends(require_admin)])
async def health_storage(store: ObjectStore = Depends(get_store)) -> Dict[str, Any]:
    """Lista el prefijo de packing lists para validar credenciales y bucket."""
    try:
        items = await store.list_objects(settings.packing_list_prefix)
    except StorageError as e:
        return _status(False, detail=str(e))
    return {"ok": True, "objects": len(items), "bucket": settings.s3_bucket}


@router.get("/summary", dependencies=[Depends(require_admin)])
async def health_summary(
    db: AsyncSession = Depends(get_session),
    cache: ResponseCache = Depends(get_cache),
    store: ObjectStore = Depends(get_store),
) -> Dict[str, Any]:
    db_s = await health_db(db)
    redis_s = await health_redis(cache)
    storage_s = await health_storage(store)
    overall_ok = db_s["ok"] and storage_s["ok"]
    return {
        "status": "ok" if overall_ok else "degraded",
        "details": {
            "db": db_s,
            "redis": redis_s,
            "storage": storage_s,
            "process": {"uptime_seconds": int(time.monotonic() - START_TIME)},
        },
    }
