# NG-HEADER: Nombre de archivo: packing_list.py
# NG-HEADER: Ubicación: services/routers/packing_list.py
# NG-HEADER: Descripción: Endpoints de edición y consulta de packing lists (rollos por OC) sobre S3.
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Rutas `/packing-list/*`.

Las mutaciones (bulk-edit, edit-rolls, update-rolls) validan todo el payload
antes de tocar S3 y delegan en ``RollReconciler``. Las lecturas se cachean en
Redis (TTL 7 días) y se invalidan por patrón después de cada escritura.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from telas_core.config import settings
from db.session import get_session
from services.auth import SessionData, require_admin, require_csrf, require_login
from services.cache import ResponseCache, cache_key, normalize_query
from services.deps import get_cache, get_reconciler, get_store
from services.logging.ctx_logger import log_event_db, make_correlation_id
from services.packing.documents import list_packing_list_files, read_rolls
from services.packing.export import XLSX_MEDIA_TYPE, build_order_workbook
from services.packing.models import BulkEditIn, EditRollsIn, MarkSoldIn, Roll
from services.packing.reconciler import DocumentNotFound, NoDocuments, RollReconciler
from services.packing.validation import (
    ChangeValidationError,
    parse_changes,
    parse_edit_rolls,
    parse_mark_sold,
)
from services.packing.views import (
    available_orders,
    consolidate_entries,
    filter_by_fabric,
    group_by_lot,
    order_rolls,
)
from services.ratelimit import rate_limit
from services.storage.s3 import ObjectInfo, ObjectStore, StorageError, WriteConflict


router = APIRouter(prefix="/packing-list", tags=["packing-list"])
logger = logging.getLogger("telas.packing")

ROLLS_CACHE_PREFIX = "api:s3:get-rolls"
ORDERS_CACHE_PREFIX = "api:packing-list:available-orders"
ORDER_ROLLS_CACHE_PREFIX = "api:packing-list:order-rolls"


def _correlation_id(request: Request) -> str:
    """Id que puso el middleware en la respuesta (X-Correlation-Id)."""
    cid = getattr(request.state, "correlation_id", None)
    return cid or request.headers.get("x-correlation-id") or request.headers.get("x-request-id") or make_correlation_id()


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def _cached(
    cache: ResponseCache,
    prefix: str,
    request: Request,
    refresh: bool,
    build: Callable[[], Awaitable[Any]],
) -> Any:
    """Devuelve la respuesta cacheada o la construye y la guarda (``refresh`` fuerza)."""
    search = normalize_query((k, v) for k, v in request.query_params.multi_items() if k != "refresh")
    key = cache_key(prefix, request.url.path, search)
    if not refresh:
        hit = await cache.get_json(key)
        if hit is not None:
            logger.debug("Cache HIT %s", key)
            return hit
    logger.debug("Cache MISS %s", key)
    value = await build()
    if value is not None:
        await cache.set_json(key, value)
    return value


async def _load_documents(store: ObjectStore, files: Sequence[ObjectInfo]) -> List[Tuple[ObjectInfo, List[Roll]]]:
    """Lee todos los documentos; los que fallan se registran y se omiten."""
    out: List[Tuple[ObjectInfo, List[Roll]]] = []
    for f in files:
        try:
            out.append((f, await read_rolls(store, f.key)))
        except StorageError:
            logger.exception("Error leyendo archivo %s", f.key)
    return out


async def _list_files(store: ObjectStore) -> List[ObjectInfo]:
    try:
        return await list_packing_list_files(store, settings.packing_list_prefix, settings.packing_list_marker)
    except StorageError as e:
        raise HTTPException(status_code=502, detail=f"Error de almacenamiento: {e}")


# --- Mutaciones ----------------------------------------------------------------


@router.put(
    "/bulk-edit",
    dependencies=[
        Depends(rate_limit("auth", "Demasiadas actualizaciones masivas. Espera antes de continuar.")),
        Depends(require_csrf),
    ],
)
async def bulk_edit(
    payload: BulkEditIn,
    request: Request,
    sess: SessionData = Depends(require_admin),
    reconciler: RollReconciler = Depends(get_reconciler),
    db: AsyncSession = Depends(get_session),
):
    """Aplica altas, ediciones y bajas de rollos sobre una o varias OCs."""
    try:
        changes = parse_changes(payload.changes)
    except ChangeValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    cid = _correlation_id(request)
    try:
        report = await reconciler.bulk_edit(changes, actor=sess.actor, correlation_id=cid)
    except (NoDocuments, DocumentNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StorageError as e:
        logger.error("bulk-edit cid=%s falló: %s", cid, e)
        raise HTTPException(status_code=502, detail=f"Error de almacenamiento: {e}")

    await log_event_db(
        db,
        action="bulk-edit",
        target=",".join(report.results)[:512],
        user_id=sess.user_id,
        ip=_client_ip(request),
        correlation_id=cid,
        changes_requested=report.changes_requested,
        changes_applied=report.changes_applied,
    )
    return {
        "success": True,
        "message": (
            f"Cambios masivos aplicados correctamente: {report.changes_applied} de "
            f"{report.changes_requested}"
        ),
        "data": report.to_dict(),
        "cache": {"invalidated": bool(report.cache_patterns), "patterns": report.cache_patterns},
    }


@router.put(
    "/edit-rolls",
    dependencies=[
        Depends(rate_limit("auth", "Demasiadas actualizaciones de rollos. Espera antes de continuar.")),
        Depends(require_csrf),
    ],
)
async def edit_rolls(
    payload: EditRollsIn,
    request: Request,
    sess: SessionData = Depends(require_admin),
    reconciler: RollReconciler = Depends(get_reconciler),
    db: AsyncSession = Depends(get_session),
):
    """Reemplaza rollos completos de una OC (se conserva ``fecha_ingreso`` si no viene)."""
    try:
        changes = parse_edit_rolls(payload.oc, payload.updated_rolls)
    except ChangeValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    oc = payload.oc.strip()
    cid = _correlation_id(request)
    try:
        file_key, report, total_in_oc = await reconciler.edit_rolls(
            oc, changes, actor=sess.actor, correlation_id=cid
        )
    except (NoDocuments, DocumentNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=502, detail=f"Error de almacenamiento: {e}")

    result = report.results[file_key]
    if result.error == "conflict":
        raise HTTPException(status_code=409, detail="El packing list cambió durante la edición; reintentá")
    if result.error:
        raise HTTPException(status_code=502, detail=result.error)

    await log_event_db(
        db,
        action="edit-rolls",
        target=file_key,
        user_id=sess.user_id,
        ip=_client_ip(request),
        correlation_id=cid,
        oc=oc,
        rolls_updated=result.changes_applied,
    )
    return {
        "success": True,
        "message": "Packing list actualizado correctamente",
        "data": {
            "oc": oc,
            "updatedFile": file_key,
            "backupFile": result.backup_file,
            "rollsUpdated": result.changes_applied,
            "totalRollsInOC": total_in_oc,
            "changes": [c.to_dict() for c in report.changes],
        },
        "cache": {"invalidated": bool(report.cache_patterns), "patterns": report.cache_patterns},
    }


@router.post(
    "/update-rolls",
    dependencies=[
        Depends(rate_limit("auth", "Demasiadas actualizaciones de rollos. Espera antes de continuar.")),
        Depends(require_csrf),
    ],
)
async def mark_rolls_sold(
    payload: MarkSoldIn,
    request: Request,
    sess: SessionData = Depends(require_admin),
    reconciler: RollReconciler = Depends(get_reconciler),
    db: AsyncSession = Depends(get_session),
):
    """Quita del packing list los rollos vendidos de un lote."""
    try:
        tela, color, lote, numbers = parse_mark_sold(payload.tela, payload.color, payload.lot, payload.sold_rolls)
    except ChangeValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        out = await reconciler.mark_sold(tela, color, lote, numbers, actor=sess.actor)
    except (NoDocuments, DocumentNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WriteConflict:
        raise HTTPException(status_code=409, detail="El packing list cambió durante la venta; reintentá")
    except StorageError as e:
        raise HTTPException(status_code=502, detail=f"Error de almacenamiento: {e}")

    await log_event_db(
        db,
        action="update-rolls-sold",
        target=out["updatedFile"],
        user_id=sess.user_id,
        ip=_client_ip(request),
        correlation_id=_correlation_id(request),
        tela=tela,
        color=color,
        lote=lote,
        rolls=numbers,
    )
    patterns = out.pop("cachePatterns")
    return {
        "success": True,
        "message": "Packing list actualizado correctamente",
        **out,
        "cache": {"invalidated": bool(patterns), "patterns": patterns},
    }


# --- Lecturas ------------------------------------------------------------------


@router.get(
    "/get-rolls",
    dependencies=[Depends(rate_limit("api", "Demasiadas consultas de rollos. Espera un momento.")), Depends(require_login)],
)
async def get_rolls(
    request: Request,
    tela: Optional[str] = None,
    color: Optional[str] = None,
    refresh: bool = False,
    store: ObjectStore = Depends(get_store),
    cache: ResponseCache = Depends(get_cache),
):
    """Rollos disponibles de una tela/color agrupados por lote."""
    if not tela or not color:
        raise HTTPException(status_code=400, detail="Tela y color son requeridos")
    files = await _list_files(store)
    if not files:
        raise HTTPException(status_code=404, detail="No se encontraron archivos de packing list")

    async def build() -> Any:
        entries = []
        for _, rolls in await _load_documents(store, files):
            entries.extend(group_by_lot(rolls, settings.default_almacen))
        return consolidate_entries(filter_by_fabric(entries, tela, color))

    return await _cached(cache, ROLLS_CACHE_PREFIX, request, refresh, build)


@router.get(
    "/list-files",
    dependencies=[Depends(rate_limit("api")), Depends(require_admin)],
)
async def list_files(store: ObjectStore = Depends(get_store)):
    files = await _list_files(store)
    return {
        "files": [
            {
                "key": f.key,
                "lastModified": f.last_modified.isoformat() if f.last_modified else None,
                "size": f.size,
            }
            for f in files
        ]
    }


@router.get(
    "/get-available-orders",
    dependencies=[Depends(rate_limit("api", "Demasiadas consultas de órdenes. Espera un momento.")), Depends(require_admin)],
)
async def get_available_orders(
    request: Request,
    refresh: bool = False,
    store: ObjectStore = Depends(get_store),
    cache: ResponseCache = Depends(get_cache),
):
    """OCs disponibles para edición con su archivo y cantidad de rollos."""

    async def build() -> Any:
        files = await _list_files(store)
        docs = await _load_documents(store, files)
        orders = available_orders([(f.key, f.last_modified, rolls) for f, rolls in docs if rolls])
        logger.info("Órdenes encontradas: %d en %d archivos", len(orders), len(files))
        return orders

    return await _cached(cache, ORDERS_CACHE_PREFIX, request, refresh, build)


@router.post("/get-available-orders", dependencies=[Depends(require_admin), Depends(require_csrf)])
async def invalidate_available_orders(cache: ResponseCache = Depends(get_cache)):
    await cache.invalidate_pattern(f"cache:{ORDERS_CACHE_PREFIX}*")
    return {
        "success": True,
        "message": "Cache de órdenes disponibles invalidado",
        "cache": {"invalidated": True},
    }


async def _find_order(store: ObjectStore, oc: str) -> Optional[dict]:
    files = await _list_files(store)
    for f in files:
        try:
            rolls = order_rolls(await read_rolls(store, f.key), oc)
        except StorageError:
            logger.exception("Error procesando %s al buscar OC %s", f.key, oc)
            continue
        if rolls:
            logger.info("Encontrados %d rollos para OC %s en %s", len(rolls), oc, f.key)
            return {
                "oc": oc,
                "fileName": f.key.rsplit("/", 1)[-1],
                "lastModified": f.last_modified.isoformat() if f.last_modified else None,
                "rolls": rolls,
            }
    logger.info("No se encontraron rollos para OC %s", oc)
    return None


@router.get(
    "/get-order-rolls",
    dependencies=[Depends(rate_limit("api", "Demasiadas consultas de rollos. Espera un momento.")), Depends(require_admin)],
)
async def get_order_rolls(
    request: Request,
    oc: Optional[str] = None,
    refresh: bool = False,
    store: ObjectStore = Depends(get_store),
    cache: ResponseCache = Depends(get_cache),
):
    """Rollos de una OC ordenados por número; ``null`` si la OC no existe."""
    if not oc or not oc.strip():
        raise HTTPException(status_code=400, detail="Parámetro 'oc' es requerido")
    wanted = oc.strip()
    return await _cached(cache, ORDER_ROLLS_CACHE_PREFIX, request, refresh, lambda: _find_order(store, wanted))


@router.post("/get-order-rolls", dependencies=[Depends(require_admin), Depends(require_csrf)])
async def invalidate_order_rolls(cache: ResponseCache = Depends(get_cache)):
    await cache.invalidate_pattern(f"cache:{ORDER_ROLLS_CACHE_PREFIX}*")
    return {
        "success": True,
        "message": "Cache de rollos por OC invalidado",
        "cache": {"invalidated": True},
    }


@router.get(
    "/order-rolls/export.xlsx",
    dependencies=[Depends(rate_limit("api")), Depends(require_admin)],
)
async def export_order_rolls(
    request: Request,
    oc: str = Query(..., min_length=1),
    store: ObjectStore = Depends(get_store),
):
    """Planilla XLSX con los rollos de la OC."""
    found = await _find_order(store, oc.strip())
    if not found:
        raise HTTPException(status_code=404, detail=f"No se encontraron rollos para la OC: {oc}")
    content = build_order_workbook(found["oc"], found["rolls"])
    safe = re.sub(r"[^A-Za-z0-9._-]+", "_", found["oc"]) or "OC"
    headers = {"Content-Disposition": f"attachment; filename=rollos_{safe}.xlsx"}
    cid = request.headers.get("x-correlation-id") or request.headers.get("x-request-id")
    if cid:
        headers["X-Correlation-Id"] = cid
    return Response(content=content, media_type=XLSX_MEDIA_TYPE, headers=headers)
