# NG-HEADER: Nombre de archivo: documents.py
# NG-HEADER: Ubicación: services/packing/documents.py
# NG-HEADER: Descripción: Listado, lectura y búsqueda por OC de los documentos de packing list.
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Documentos de packing list en S3.

Un documento es un JSON con un array de rollos. No hay índice: para saber en
qué documento vive una OC se leen los archivos en el orden del listado hasta
encontrar uno que la contenga.
"""

from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional, Sequence

from services.storage.s3 import ObjectInfo, ObjectStore, StorageError

from .matching import normalize_oc
from .models import OC, Roll


logger = logging.getLogger("telas.packing.documents")


def is_packing_list_key(key: str, marker: str = "detalle_") -> bool:
    """Convención de nombres: ``.json``, contiene el marcador y no es backup ni fila suelta."""
    return (
        key.endswith(".json")
        and "backup" not in key
        and "_row" not in key
        and marker in key
    )


async def list_packing_list_files(store: ObjectStore, prefix: str, marker: str = "detalle_") -> List[ObjectInfo]:
    files = await store.list_objects(prefix)
    return [f for f in files if is_packing_list_key(f.key, marker)]


def parse_rolls(body: bytes | str | None, key: str = "") -> List[Roll]:
    if not body:
        return []
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        logger.warning("Documento %s no es JSON válido; se ignora", key)
        return []
    if not isinstance(data, list):
        logger.warning("Documento %s no contiene un array de rollos; se ignora", key)
        return []
    return [r for r in data if isinstance(r, dict)]


async def read_rolls(store: ObjectStore, key: str) -> List[Roll]:
    """Rollos de un documento; vacío si no existe o no es un array JSON.

    Los errores de E/S (``StorageError``) se propagan.
    """
    obj = await store.get_object(key)
    if obj is None:
        return []
    return parse_rolls(obj.body, key)


def document_has_oc(rolls: Sequence[Roll], oc: str) -> bool:
    wanted = normalize_oc(oc)
    if not wanted:
        return False
    return any(normalize_oc(r.get(OC)) == wanted for r in rolls)


async def locate_document(
    store: ObjectStore,
    files: Sequence[ObjectInfo],
    oc: str,
    loaded: Optional[Dict[str, List[Roll]]] = None,
) -> Optional[str]:
    """Primer documento (orden del listado) con algún rollo de la OC.

    ``loaded`` es un memo de lecturas compartido dentro de una misma request.
    """
    for f in files:
        if loaded is not None and f.key in loaded:
            rolls = loaded[f.key]
        else:
            try:
                rolls = await read_rolls(store, f.key)
            except StorageError:
                logger.exception("Error procesando %s al buscar OC %s", f.key, oc)
                continue
            if loaded is not None:
                loaded[f.key] = rolls
        if document_has_oc(rolls, oc):
            return f.key
    logger.warning('OC "%s" no encontrada en ningún archivo', oc)
    return None


def dump_rolls(rolls: Sequence[Roll]) -> bytes:
    """Serialización usada para documentos y backups (indentado, UTF-8)."""
    return json.dumps(list(rolls), ensure_ascii=False, indent=2).encode("utf-8")


def file_name(key: str) -> str:
    return key.rsplit("/", 1)[-1]
