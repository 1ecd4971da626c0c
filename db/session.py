# NG-HEADER: Nombre de archivo: session.py
# NG-HEADER: Ubicación: db/session.py
# NG-HEADER: Descripción: Creación del engine y sesiones de SQLAlchemy.
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Sesión asíncrona para SQLAlchemy."""
import os
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from telas_core.config import settings

# ``DEBUG_SQL=1`` activa el modo ``echo`` para ver las consultas generadas.
ECHO = os.getenv("DEBUG_SQL", "0") == "1"

# Priorizar variable de entorno DB_URL si está definida (p. ej., tests la setean a :memory:)
db_url = os.getenv("DB_URL") or settings.db_url
kwargs: dict = {"echo": ECHO, "pool_pre_ping": True}
if db_url.startswith("sqlite+") and ":memory:" in db_url:
    # Usar una DB en memoria compartida y con nombre para múltiples conexiones
    # Referencia: https://www.sqlite.org/inmemorydb.html (URI mode)
    db_url = "sqlite+aiosqlite:///file:telasmem?mode=memory&cache=shared"
    kwargs.update({"connect_args": {"uri": True}, "poolclass": StaticPool})

engine = create_async_engine(db_url, **kwargs)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def init_schema() -> None:
    """Crea las tablas si no existen (usuarios, sesiones, auditoría)."""
    import db.models  # noqa: F401  # registra los modelos en la metadata
    from db.base import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session
