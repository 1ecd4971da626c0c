# NG-HEADER: Nombre de archivo: backups_admin.py
# NG-HEADER: Ubicación: services/routers/backups_admin.py
# NG-HEADER: Descripción: Endpoints admin para listar y descargar backups de packing lists en S3.
# NG-HEADER: Lineamientos: Ver AGENTS.md

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response

from telas_core.config import settings
from services.auth import require_admin
from services.deps import get_store
from services.packing.backups import list_backups
from services.storage.s3 import ObjectStore, StorageError


router = APIRouter(prefix="/admin/backups", tags=["admin", "backups"])


@router.get("", dependencies=[Depends(require_admin)])
async def list_all(store: ObjectStore = Depends(get_store)) -> Dict[str, Any]:
    """Lista backups disponibles ordenados por fecha (desc)."""
    try:
        return {"items": await list_backups(store, settings.packing_list_prefix)}
    except StorageError as e:
        raise HTTPException(status_code=502, detail=f"No se pudieron listar los backups: {e}")


@router.get("/download/{filename}", dependencies=[Depends(require_admin)])
async def download_backup(filename: str, store: ObjectStore = Depends(get_store)):
    """Descarga un backup por nombre de archivo."""
    # Evitar salir de la carpeta de backups
    if "/" in filename or ".." in filename or "\\" in filename or not filename.endswith(".json"):
        raise HTTPException(status_code=400, detail="filename inválido")
    key = f"{settings.packing_list_prefix}backups/{filename}"
    try:
        obj = await store.get_object(key)
    except StorageError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if obj is None:
        raise HTTPException(status_code=404, detail="No encontrado")
    return Response(
        content=obj.body,
        media_type="application/json",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
