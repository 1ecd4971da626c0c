# NG-HEADER: Nombre de archivo: api.py
# NG-HEADER: Ubicación: services/api.py
# NG-HEADER: Descripción: Aplicación FastAPI principal (logging, middlewares, routers, arranque).
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Aplicación FastAPI del backend de packing lists."""

import logging
import os
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi import HTTPException as FastHTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from telas_core.config import settings
from db.session import SessionLocal, engine, init_schema
from services.auth import ensure_admin_user
from services.storage.s3 import StorageError
from .routers import auth, backups_admin, health, packing_list

raw_level = os.getenv("LOG_LEVEL", "INFO") or "INFO"
level_name = raw_level.strip().upper()
if level_name not in logging._nameToLevel:
    level_name = "INFO"
logger = logging.getLogger("telas")
logger.setLevel(level_name)
LOG_DIR = Path(__file__).resolve().parents[1] / "logs"
try:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
except OSError:
    pass
fmt = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
stream_handler = logging.StreamHandler()
stream_handler.setFormatter(fmt)

file_handler = None
log_path = LOG_DIR / "backend.log"
try:
    # delay=True evita abrir el archivo hasta el primer log
    file_handler = RotatingFileHandler(
        str(log_path), maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8", delay=True
    )
    file_handler.setFormatter(fmt)
    logger.addHandler(file_handler)
except OSError:
    # Sin permisos: continuar solo con consola
    file_handler = None

logger.addHandler(stream_handler)

handlers = [h for h in (file_handler, stream_handler) if h is not None]
for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
    logging.getLogger(name).handlers = handlers
    logging.getLogger(name).setLevel(level_name)

# `redirect_slashes=False` evita redirecciones 307 entre `/ruta` y `/ruta/`,
# lo que rompe las solicitudes *preflight* de CORS.
app = FastAPI(title="Telas Packing Lists", redirect_slashes=False)

logger.info("DB effective URL: %s", engine.url.render_as_string(hide_password=True))


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Registra cada solicitud y captura excepciones con un correlation-id."""
    start = time.perf_counter()
    corr = request.headers.get("x-correlation-id") or request.headers.get("x-request-id")
    if not corr:
        # id liviano: epoch-ms + pid
        corr = f"req-{int(time.time()*1000):x}-{os.getpid():x}"
    # Los routers lo leen de request.state para NDJSON y auditoría
    request.state.correlation_id = corr
    try:
        resp = await call_next(request)
    except (FastHTTPException, StarletteHTTPException):
        raise
    except Exception:
        dur = (time.perf_counter() - start) * 1000
        logger.exception("EXC %s %s cid=%s (%.2fms)", request.method, request.url.path, corr, dur)
        return JSONResponse(
            {
                "detail": "Error interno del servidor. Si el problema persiste, informá este código.",
                "correlation_id": corr,
            },
            status_code=500,
            headers={"X-Correlation-Id": corr},
        )
    dur = (time.perf_counter() - start) * 1000
    resp.headers["X-Correlation-Id"] = corr
    logger.info("%s %s -> %s cid=%s (%.2fms)", request.method, request.url.path, resp.status_code, corr, dur)
    return resp


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):  # type: ignore[override]
    """Fallas de S3 que no mapeó el router: 502 sin filtrar detalles internos."""
    logger.error("StorageError %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse({"detail": "Error de almacenamiento", "code": "storage_error"}, status_code=502)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
    """Registra los errores de validación por campo y devuelve el formato por defecto (422)."""
    flat = []
    for e in exc.errors():
        loc = ".".join([str(p) for p in e.get("loc", [])])
        flat.append({"loc": loc, "msg": e.get("msg", ""), "type": e.get("type", "")})
    logger.warning("Validación fallida 422 %s %s: %s", request.method, request.url.path, flat)
    return JSONResponse(status_code=422, content={"detail": exc.errors()})


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(packing_list.router)
app.include_router(backups_admin.router)
app.include_router(health.router)


@app.on_event("startup")
async def _startup() -> None:
    """Crea el esquema y, en desarrollo, el usuario admin inicial."""
    await init_schema()
    if settings.env == "dev":
        email = settings.admin_user if "@" in settings.admin_user else f"{settings.admin_user}@telas.local"
        async with SessionLocal() as s:
            await ensure_admin_user(s, email, settings.admin_pass)
    logger.info(
        "Backend listo: bucket=%s prefijo=%s cache=%s",
        settings.s3_bucket,
        settings.packing_list_prefix,
        "redis" if settings.redis_url else "off",
    )
