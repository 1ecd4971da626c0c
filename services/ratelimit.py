# NG-HEADER: Nombre de archivo: ratelimit.py
# NG-HEADER: Ubicación: services/ratelimit.py
# NG-HEADER: Descripción: Rate limiting por IP con ventana deslizante en memoria.
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Rate limiting simple por proceso.

Cada tipo de limitador mantiene timestamps por IP; se descartan los que salen
de la ventana antes de decidir. Pensado para un solo proceso: con varios
workers cada uno lleva su propia cuenta.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Literal, Optional, Tuple

from fastapi import HTTPException, Request

from telas_core.config import settings


logger = logging.getLogger("telas.ratelimit")

LimiterType = Literal["auth", "api", "contact"]


@dataclass(frozen=True)
class LimiterSpec:
    max_requests: int
    window: float  # segundos


LIMITERS: Dict[str, LimiterSpec] = {
    # Mutaciones y login: el más estricto
    "auth": LimiterSpec(5, 60),
    "api": LimiterSpec(20, 60),
    "contact": LimiterSpec(3, 60),
}

DEFAULT_MESSAGE = "Demasiadas solicitudes. Por favor, inténtalo de nuevo más tarde."

_RL_BUCKET: Dict[Tuple[str, str], List[float]] = {}


def client_ip(request: Request) -> str:
    """IP del cliente según los headers del proxy (primer salto de X-Forwarded-For)."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    for header in ("true-client-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value:
            return value
    return "127.0.0.1"


def check(kind: str, identifier: str, now: Optional[float] = None) -> Tuple[bool, int, int, float]:
    """Registra un intento. Devuelve (permitido, límite, restantes, reset en epoch segundos)."""
    spec = LIMITERS[kind]
    now = time.time() if now is None else now
    bucket = _RL_BUCKET.setdefault((kind, identifier), [])
    cutoff = now - spec.window
    while bucket and bucket[0] <= cutoff:
        bucket.pop(0)
    # Si ya alcanzó el máximo, bloquear antes de agregar
    if len(bucket) >= spec.max_requests:
        return False, spec.max_requests, 0, bucket[0] + spec.window
    bucket.append(now)
    reset = bucket[0] + spec.window
    return True, spec.max_requests, spec.max_requests - len(bucket), reset


def reset_limits() -> None:
    _RL_BUCKET.clear()


def rate_limit(kind: LimiterType, message: str = DEFAULT_MESSAGE) -> Callable:
    """Dependencia FastAPI que responde 429 cuando la IP supera el límite."""
    if kind not in LIMITERS:
        raise ValueError(f"Limitador desconocido: {kind}")

    async def dep(request: Request) -> None:
        if settings.rate_limit_disabled:
            return
        ip = client_ip(request)
        allowed, limit, remaining, reset = check(kind, ip)
        if allowed:
            return
        retry_after = max(0, math.ceil(reset - time.time()))
        logger.warning("Rate limit %s excedido para %s en %s", kind, ip, request.url.path)
        raise HTTPException(
            status_code=429,
            detail=message,
            headers={
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": str(remaining),
                "X-RateLimit-Reset": str(int(reset * 1000)),
                "Retry-After": str(retry_after),
            },
        )

    return dep


__all__ = ["rate_limit", "client_ip", "check", "reset_limits", "LIMITERS"]
