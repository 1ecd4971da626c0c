# NG-HEADER: Nombre de archivo: cache.py
# NG-HEADER: Ubicación: services/cache.py
# NG-HEADER: Descripción: Cache de respuestas de lectura en Redis e invalidación por patrón.
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Cache de lecturas de packing lists.

Las rutas GET guardan su respuesta bajo ``cache:{prefijo}:pathname:...:search:...``
y las escrituras invalidan por patrón. Un fallo de Redis nunca rompe la
request: se registra y se sigue sin cache.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from telas_core.config import Settings


logger = logging.getLogger("telas.cache")

# Patrones que se invalidan después de cualquier escritura sobre rollos
READ_CACHE_PATTERNS = (
    "cache:api:s3:get-rolls*",
    "cache:api:packing-list:available-orders*",
    "cache:api:packing-list:order-rolls*",
)


def normalize_query(params: Iterable[Tuple[str, str]]) -> str:
    """Query string ordenado por clave y valor (misma URL lógica -> misma clave)."""
    pairs = sorted((str(k), str(v)) for k, v in params)
    if not pairs:
        return ""
    return "?" + "&".join(f"{k}={v}" for k, v in pairs)


def cache_key(prefix: str, pathname: str, search: str = "") -> str:
    return f"cache:{prefix}:pathname:{pathname}:search:{search}"


class ResponseCache:
    """Envoltura mínima sobre ``redis.asyncio``; sin cliente queda deshabilitada."""

    def __init__(self, client: Optional[aioredis.Redis] = None, ttl: int = 604800) -> None:
        self.client = client
        self.ttl = ttl

    @property
    def enabled(self) -> bool:
        return self.client is not None

    async def get_json(self, key: str) -> Any:
        if self.client is None:
            return None
        try:
            raw = await self.client.get(key)
        except RedisError:
            logger.warning("Cache GET falló para %s", key, exc_info=True)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Entrada de cache corrupta %s; se ignora", key)
            return None

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if self.client is None:
            return False
        try:
            await self.client.setex(key, ttl or self.ttl, json.dumps(value, ensure_ascii=False, default=str))
            return True
        except RedisError:
            logger.warning("Cache SET falló para %s", key, exc_info=True)
            return False

    async def invalidate_pattern(self, pattern: str) -> int:
        """Borra las claves que matchean ``pattern``. Devuelve cuántas se borraron."""
        if self.client is None:
            return 0
        try:
            keys: List[Any] = [k async for k in self.client.scan_iter(match=pattern, count=100)]
            if not keys:
                return 0
            await self.client.delete(*keys)
            logger.info("Invalidadas %d entradas de cache para %s", len(keys), pattern)
            return len(keys)
        except RedisError:
            logger.error("Error invalidando cache %s", pattern, exc_info=True)
            return 0


async def invalidate_read_caches(cache: ResponseCache) -> List[str]:
    """Invalida las vistas de rollos. Best-effort: devuelve los patrones procesados."""
    for pattern in READ_CACHE_PATTERNS:
        await cache.invalidate_pattern(pattern)
    return list(READ_CACHE_PATTERNS)


def build_cache(cfg: Settings) -> ResponseCache:
    if not cfg.redis_url:
        return ResponseCache(None, ttl=cfg.cache_ttl_seconds)
    client = aioredis.from_url(cfg.redis_url, decode_responses=True)
    return ResponseCache(client, ttl=cfg.cache_ttl_seconds)
