# NG-HEADER: Nombre de archivo: seed_admin.py
# NG-HEADER: Ubicación: scripts/seed_admin.py
# NG-HEADER: Descripción: Script idempotente para crear usuario admin inicial con password Argon2
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Crea (o resetea) el usuario admin inicial.

Uso: ``python -m scripts.seed_admin`` con ``ADMIN_USER``/``ADMIN_PASS`` en el
entorno. ``RESET_ADMIN_PASS=1`` rehace el hash si el usuario ya existe.
"""

import asyncio
import logging
import os

from telas_core.config import settings
from db.session import SessionLocal, init_schema
from services.auth import ensure_admin_user


logger = logging.getLogger("telas.seed_admin")


def _mask_url(u: str) -> str:
    if "://" in u and "@" in u:
        pre, post = u.split("://", 1)
        creds, rest = post.split("@", 1)
        if ":" in creds:
            user, _pwd = creds.split(":", 1)
            return f"{pre}://{user}:***@{rest}"
    return u


async def main() -> None:
    logger.info("ENV=%s DB_URL=%s", settings.env, _mask_url(settings.db_url))
    await init_schema()
    email = settings.admin_user if "@" in settings.admin_user else f"{settings.admin_user}@telas.local"
    reset = os.getenv("RESET_ADMIN_PASS", "1" if settings.env == "dev" else "0").lower() in {"1", "true", "yes"}
    async with SessionLocal() as db:
        user = await ensure_admin_user(db, email, settings.admin_pass, reset=reset)
    logger.info("Admin listo: %s (id=%s)", user.email, user.id)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    asyncio.run(main())
