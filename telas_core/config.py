# NG-HEADER: Nombre de archivo: config.py
# NG-HEADER: Ubicación: telas_core/config.py
# NG-HEADER: Descripción: Configuración central del backend de packing lists.
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Configuración central leída del entorno."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from dotenv import load_dotenv

# Marcadores que deben sustituirse en producción
SECRET_KEY_PLACEHOLDER = "REEMPLAZAR_SECRET_KEY"
ADMIN_PASS_PLACEHOLDER = "REEMPLAZAR_ADMIN_PASS"

# Carga automática de variables definidas en .env
load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


def _expand_local(origins: list[str]) -> list[str]:
    """Duplica ``localhost``/``127.0.0.1`` para evitar errores de CORS en desarrollo."""
    out: set[str] = set()
    for o in origins:
        o = o.strip()
        if not o:
            continue
        out.add(o)
        if o.startswith("http://localhost:"):
            out.add(o.replace("http://localhost:", "http://127.0.0.1:"))
        if o.startswith("http://127.0.0.1:"):
            out.add(o.replace("http://127.0.0.1:", "http://localhost:"))
    return list(out)


@dataclass
class Settings:
    """Parámetros de configuración leídos de variables de entorno."""

    env: str = os.getenv("ENV", "dev")
    db_url: str = os.getenv("DB_URL", "")
    secret_key: str = os.getenv("SECRET_KEY", SECRET_KEY_PLACEHOLDER)
    admin_user: str = os.getenv("ADMIN_USER", "admin")
    admin_pass: str = os.getenv("ADMIN_PASS", ADMIN_PASS_PLACEHOLDER)
    session_expire_minutes: int = int(
        os.getenv("SESSION_EXPIRE_MINUTES", "1440")
    )  # duración de la sesión en minutos (1 día por defecto)
    cookie_secure: bool = _flag("COOKIE_SECURE")
    cookie_domain: str | None = os.getenv("COOKIE_DOMAIN") or None
    allowed_origins: list[str] = field(default_factory=list)
    # Modo desarrollo: permite asumir rol admin sin sesión (solo dev, nunca prod)
    dev_assume_admin: bool = _flag("DEV_ASSUME_ADMIN")

    # Bucket S3 con los packing lists (un JSON por OC/lote de ingreso)
    s3_bucket: str = os.getenv("S3_BUCKET", "telas-luciana")
    s3_region: str = os.getenv("S3_REGION", "us-west-2")
    s3_access_key_id: str | None = os.getenv("S3_ACCESS_KEY_ID") or None
    s3_secret_access_key: str | None = os.getenv("S3_SECRET_ACCESS_KEY") or None
    # Endpoint alternativo (MinIO/localstack) para desarrollo
    s3_endpoint_url: str | None = os.getenv("S3_ENDPOINT_URL") or None
    packing_list_prefix: str = os.getenv("PACKING_LIST_PREFIX", "Inventario/Catalogo_Rollos/")
    packing_list_marker: str = os.getenv("PACKING_LIST_MARKER", "detalle_")
    # Escritura condicional (If-Match con ETag). Apagado = last-write-wins.
    packing_conditional_writes: bool = _flag("PACKING_CONDITIONAL_WRITES")
    default_almacen: str = os.getenv("DEFAULT_ALMACEN", "CDMX")

    # Cache de lecturas (Redis). Vacío = cache deshabilitado.
    redis_url: str | None = os.getenv("REDIS_URL") or None
    cache_ttl_seconds: int = int(os.getenv("CACHE_TTL_SECONDS", "604800"))

    rate_limit_disabled: bool = _flag("RATE_LIMIT_DISABLED")

    def __post_init__(self) -> None:
        if not self.db_url:
            if self.env == "dev":
                # Fallback amigable para no bloquear el arranque local
                self.db_url = "sqlite+aiosqlite:///./dev.db"
            else:
                raise RuntimeError("DB_URL debe definirse en el entorno")
        if self.secret_key == SECRET_KEY_PLACEHOLDER:
            if self.env == "dev":
                self.secret_key = "dev-secret-key"
            else:
                raise RuntimeError(
                    "SECRET_KEY debe sobrescribirse; reemplace el placeholder 'REEMPLAZAR_SECRET_KEY'"
                )
        if self.admin_pass == ADMIN_PASS_PLACEHOLDER:
            if self.env == "dev":
                # Fallback de desarrollo (NO usar en producción)
                self.admin_pass = "admin1234"
            else:
                raise RuntimeError(
                    "ADMIN_PASS debe sobrescribirse; reemplace el placeholder 'REEMPLAZAR_ADMIN_PASS'"
                )
        if self.packing_list_prefix and not self.packing_list_prefix.endswith("/"):
            self.packing_list_prefix += "/"

        raw = os.getenv("ALLOWED_ORIGINS", "").split(",")
        origins = [o.strip() for o in raw if o.strip()]
        if self.env == "dev":
            if not origins:
                origins = ["http://localhost:3000"]
            origins = _expand_local(origins)
        elif not origins:
            raise RuntimeError(
                "En producción, ALLOWED_ORIGINS debe definir al menos un origen"
            )
        self.allowed_origins = origins

        # Fail-safe: forzar dev_assume_admin=False fuera de entorno dev
        if self.env != "dev" and self.dev_assume_admin:
            import logging
            logging.getLogger("telas.config").warning(
                "SEGURIDAD: dev_assume_admin fue ignorado porque ENV=%s (no es 'dev')",
                self.env
            )
            self.dev_assume_admin = False


settings = Settings()
