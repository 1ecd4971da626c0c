# NG-HEADER: Nombre de archivo: backups.py
# NG-HEADER: Ubicación: services/packing/backups.py
# NG-HEADER: Descripción: Copias de respaldo de packing lists en S3 antes de cada escritura.
# NG-HEADER: Lineamientos: Ver AGENTS.md

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Sequence

from services.storage.s3 import ObjectStore

from .documents import dump_rolls, file_name
from .models import Roll


def backup_key(prefix: str, file_key: str, tag: str, ts_ms: int) -> str:
    """``{prefix}backups/{archivo}_backup_{tag}_{ts}.json``."""
    name = file_name(file_key)
    if name.endswith(".json"):
        name = name[: -len(".json")]
    return f"{prefix}backups/{name}_backup_{tag}_{ts_ms}.json"


async def write_backup(
    store: ObjectStore,
    key: str,
    rolls: Sequence[Roll],
    reason: str,
    actor: Optional[str] = None,
) -> str:
    """Escribe el contenido previo del documento. Devuelve la clave del backup."""
    await store.put_object(
        key,
        dump_rolls(rolls),
        content_type="application/json",
        metadata={
            "backup-reason": reason,
            "backup-date": datetime.now(timezone.utc).isoformat(),
            "backed-up-by": actor or "",
        },
    )
    return key


async def list_backups(store: ObjectStore, prefix: str) -> List[dict]:
    items: List[dict] = []
    for it in await store.list_objects(f"{prefix}backups/"):
        if not it.key.endswith(".json"):
            continue
        items.append(
            {
                "key": it.key,
                "filename": file_name(it.key),
                "size": it.size,
                "modified": it.last_modified.isoformat() if it.last_modified else None,
            }
        )
    # Orden descendente por fecha
    items.sort(key=lambda x: x.get("modified") or "", reverse=True)
    return items
