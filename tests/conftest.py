#!/usr/bin/env python
# NG-HEADER: Nombre de archivo: conftest.py
# NG-HEADER: Ubicación: tests/conftest.py
# NG-HEADER: Descripción: Fixtures y configuración compartida de Pytest.
# NG-HEADER: Lineamientos: Ver AGENTS.md
import fnmatch
import hashlib
import json
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

# Asegurar path del proyecto antes de importar módulos internos
project_root = Path(__file__).resolve().parents[1]
if str(project_root) not in sys.path:
    sys.path.append(str(project_root))

# -------- Entorno base de tests --------
os.environ["DB_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("ENV", "dev")
os.environ.setdefault("SECRET_KEY", "test")
os.environ.pop("REDIS_URL", None)
os.environ.pop("DEV_ASSUME_ADMIN", None)

import db.session as _session  # noqa: E402
import db.base as _base  # noqa: E402
import db.models  # noqa: F401,E402

Base = _base.Base


@pytest_asyncio.fixture(scope="function", autouse=True)
async def db_session():
    """DB limpia por test (SQLite memoria compartida)."""
    engine = _session.engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with _session.SessionLocal() as session:
        yield session
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


# -------- Overrides de auth/CSRF y colaboradores externos --------
from httpx import ASGITransport, AsyncClient  # noqa: E402

from services.api import app  # noqa: E402
from services.auth import SessionData, current_session, require_csrf  # noqa: E402
from services.cache import ResponseCache  # noqa: E402
from services.deps import get_cache, get_store  # noqa: E402
from services.ratelimit import reset_limits  # noqa: E402
from services.storage.s3 import ObjectInfo, StorageError, StoredObject, WriteConflict  # noqa: E402

PREFIX = "Inventario/Catalogo_Rollos/"

app.dependency_overrides[current_session] = lambda: SessionData(None, None, "admin")
app.dependency_overrides[require_csrf] = lambda: None


class MemoryObjectStore:
    """``ObjectStore`` en memoria con ETag por contenido y fallas inyectables."""

    def __init__(self) -> None:
        self.objects: Dict[str, dict] = {}
        self.fail_get: set = set()
        self.fail_put: set = set()
        self.puts: List[str] = []
        self._tick = 0

    def seed(self, key: str, rolls, modified: Optional[datetime] = None) -> None:
        body = rolls if isinstance(rolls, (bytes, str)) else json.dumps(rolls)
        if isinstance(body, str):
            body = body.encode("utf-8")
        self._store(key, body, {}, modified)

    def _store(self, key: str, body: bytes, metadata: dict, modified: Optional[datetime] = None) -> str:
        self._tick += 1
        etag = '"%s"' % hashlib.md5(body).hexdigest()
        self.objects[key] = {
            "body": body,
            "etag": etag,
            "metadata": dict(metadata or {}),
            "modified": modified or datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=self._tick),
        }
        return etag

    def rolls(self, key: str):
        return json.loads(self.objects[key]["body"])

    async def list_objects(self, prefix: str) -> List[ObjectInfo]:
        return [
            ObjectInfo(key=k, last_modified=v["modified"], size=len(v["body"]))
            for k, v in sorted(self.objects.items())
            if k.startswith(prefix)
        ]

    async def get_object(self, key: str) -> Optional[StoredObject]:
        if key in self.fail_get:
            raise StorageError(f"fallo simulado leyendo {key}")
        obj = self.objects.get(key)
        if obj is None:
            return None
        return StoredObject(body=obj["body"], etag=obj["etag"])

    async def put_object(self, key, body, content_type="application/json", metadata=None, if_match=None):
        if key in self.fail_put or any(fnmatch.fnmatch(key, p) for p in self.fail_put):
            raise StorageError(f"fallo simulado escribiendo {key}")
        if if_match is not None:
            current = self.objects.get(key)
            if current is None or current["etag"] != if_match:
                raise WriteConflict(f"El documento {key} cambió desde la lectura")
        self.puts.append(key)
        return self._store(key, body, metadata or {})


class FakeRedis:
    """Subconjunto de ``redis.asyncio.Redis`` usado por ``ResponseCache``."""

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}

    async def get(self, key):
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    async def scan_iter(self, match=None, count=None):
        for k in list(self.data):
            if match is None or fnmatch.fnmatchcase(k, match):
                yield k

    async def delete(self, *keys):
        n = 0
        for k in keys:
            if self.data.pop(k, None) is not None:
                n += 1
        return n

    async def ping(self):
        return True


def roll(oc="OC-1", tela="LINO", color="AZUL", lote="L1", rollo_id="1", cantidad=10, **extra) -> dict:
    r = {
        "rollo_id": rollo_id,
        "OC": oc,
        "tela": tela,
        "color": color,
        "lote": lote,
        "unidad": "KG",
        "cantidad": cantidad,
        "fecha_ingreso": "2024-01-10",
        "status": "active",
    }
    r.update(extra)
    return r


@pytest.fixture(autouse=True)
def _force_admin_and_disable_csrf(request):
    """Reafirma overrides por test; con marker 'no_auth_override' se usa la auth real."""
    if "no_auth_override" in request.keywords:
        app.dependency_overrides.pop(current_session, None)
    else:
        app.dependency_overrides[current_session] = lambda: SessionData(None, None, "admin")
    app.dependency_overrides[require_csrf] = lambda: None
    yield
    app.dependency_overrides[current_session] = lambda: SessionData(None, None, "admin")
    app.dependency_overrides[require_csrf] = lambda: None


@pytest.fixture(autouse=True)
def _clear_rate_limit_bucket():
    """Limpia los buckets de rate-limit antes de cada test."""
    reset_limits()
    yield
    reset_limits()


@pytest.fixture()
def store() -> MemoryObjectStore:
    s = MemoryObjectStore()
    app.dependency_overrides[get_store] = lambda: s
    yield s
    app.dependency_overrides.pop(get_store, None)


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def cache(fake_redis) -> ResponseCache:
    c = ResponseCache(fake_redis, ttl=604800)
    app.dependency_overrides[get_cache] = lambda: c
    yield c
    app.dependency_overrides.pop(get_cache, None)


@pytest_asyncio.fixture()
async def client(store, cache):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
