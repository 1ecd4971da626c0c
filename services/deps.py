# NG-HEADER: Nombre de archivo: deps.py
# NG-HEADER: Ubicación: services/deps.py
# NG-HEADER: Descripción: Dependencias FastAPI compartidas (object store, cache, reconciliador).
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Colaboradores externos como dependencias sobreescribibles.

Los tests reemplazan ``get_store`` y ``get_cache`` con
``app.dependency_overrides`` para no tocar S3 ni Redis.
"""

from functools import lru_cache

from fastapi import Depends

from telas_core.config import settings
from services.cache import ResponseCache, build_cache
from services.packing.reconciler import RollReconciler
from services.storage.s3 import ObjectStore, build_store


@lru_cache(maxsize=1)
def _default_store() -> ObjectStore:
    return build_store(settings)


@lru_cache(maxsize=1)
def _default_cache() -> ResponseCache:
    return build_cache(settings)


def get_store() -> ObjectStore:
    return _default_store()


def get_cache() -> ResponseCache:
    return _default_cache()


def get_reconciler(
    store: ObjectStore = Depends(get_store),
    cache: ResponseCache = Depends(get_cache),
) -> RollReconciler:
    return RollReconciler(
        store,
        prefix=settings.packing_list_prefix,
        marker=settings.packing_list_marker,
        cache=cache,
        conditional_writes=settings.packing_conditional_writes,
    )
