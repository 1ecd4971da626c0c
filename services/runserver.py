# NG-HEADER: Nombre de archivo: runserver.py
# NG-HEADER: Ubicación: services/runserver.py
# NG-HEADER: Descripción: Arranque local del backend con uvicorn.
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Servidor local de desarrollo."""

from __future__ import annotations

import os

import uvicorn


def main() -> None:
    host = os.getenv("TELAS_HOST", "127.0.0.1")
    port = int(os.getenv("TELAS_PORT", "8000"))
    log_level = os.getenv("LOG_LEVEL", "info").lower()
    uvicorn.run(
        "services.api:app",
        host=host,
        port=port,
        reload=os.getenv("TELAS_RELOAD", "1") == "1",
        log_level=log_level,
        access_log=True,
    )


if __name__ == "__main__":
    main()
