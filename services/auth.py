# NG-HEADER: Nombre de archivo: auth.py
# NG-HEADER: Ubicación: services/auth.py
# NG-HEADER: Descripción: Sesiones por cookie, roles y CSRF del backend de packing lists.
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Utilidades de autenticación y manejo de sesiones."""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request
from fastapi.responses import Response
from passlib.hash import argon2
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from telas_core.config import settings
from db.models import Session as DBSess, User
from db.session import get_session


SESSION_COOKIE = "telas_session"
CSRF_COOKIE = "csrf_token"
ADMIN_ROLES = ("admin", "major_admin")

logger = logging.getLogger("telas.auth")


def hash_pw(pwd: str) -> str:
    """Hashea una contraseña usando Argon2id."""

    return argon2.using(type="ID").hash(pwd)


def verify_pw(pwd: str, hashed: str) -> bool:
    return argon2.verify(pwd, hashed)


@dataclass
class SessionData:
    """Información de la sesión resuelta desde la cookie."""

    session: Optional[DBSess]
    user: Optional[User]
    role: str

    @property
    def actor(self) -> Optional[str]:
        """Identificador legible para metadatos y logs (email del usuario)."""
        return self.user.email if self.user else None

    @property
    def user_id(self) -> Optional[int]:
        return self.user.id if self.user else None


async def set_session_cookies(resp: Response, sid: str, csrf: str, request: Request | None = None) -> None:
    """Configura cookies de sesión y CSRF.

    Antes de establecer nuevas cookies se eliminan las existentes para evitar
    que un identificador previo quede activo y pueda reutilizarse."""

    resp.delete_cookie(SESSION_COOKIE)
    resp.delete_cookie(CSRF_COOKIE)

    max_age = settings.session_expire_minutes * 60
    secure = settings.cookie_secure
    if settings.env == "production":
        secure = True
    # En localhost por HTTP nunca marcamos Secure
    host = request.url.hostname if request else None
    scheme = request.url.scheme if request else "http"
    if host in {"localhost", "127.0.0.1"} and scheme == "http":
        secure = False
    cookie_args = {
        "httponly": True,
        "samesite": "lax",
        "secure": secure,
    }
    if settings.cookie_domain:
        cookie_args["domain"] = settings.cookie_domain
    resp.set_cookie(SESSION_COOKIE, sid, max_age=max_age, **cookie_args)

    cookie_args["httponly"] = False
    resp.set_cookie(CSRF_COOKIE, csrf, max_age=max_age, **cookie_args)
    logger.debug(
        "[cookies:set] session=%s secure=%s domain=%s", sid[:12], cookie_args.get("secure"), cookie_args.get("domain")
    )


async def create_session(
    db: AsyncSession,
    role: str,
    request: Request,
    user: User | None = None,
    prev_session: DBSess | None = None,
) -> tuple[DBSess, str]:
    """Genera una nueva sesión persistida y devuelve el objeto y token CSRF.

    Si se proporciona ``prev_session`` la elimina previamente para que el
    identificador se regenere en login y logout."""

    if prev_session:
        await db.delete(prev_session)
        await db.commit()

    sid = secrets.token_hex(32)
    csrf = secrets.token_urlsafe(24)
    expires = datetime.utcnow() + timedelta(minutes=settings.session_expire_minutes)
    sess = DBSess(
        id=sid,
        user_id=user.id if user else None,
        role=role,
        csrf_token=csrf,
        expires_at=expires,
        ip=request.client.host if request.client else None,
        user_agent=(request.headers.get("user-agent") or "")[:200] or None,
    )
    db.add(sess)
    await db.commit()
    return sess, csrf


async def current_session(
    request: Request, db: AsyncSession = Depends(get_session)
) -> SessionData:
    """Resuelve la sesión actual a partir de la cookie."""
    sid = request.cookies.get(SESSION_COOKIE)
    if not sid:
        # Solo en desarrollo y con DEV_ASSUME_ADMIN=true se asume admin sin sesión
        role = "admin" if (settings.env == "dev" and settings.dev_assume_admin) else "guest"
        return SessionData(None, None, role)

    res = await db.execute(select(DBSess).where(DBSess.id == sid))
    sess: DBSess | None = res.scalar_one_or_none()
    if not sess or sess.expires_at < datetime.utcnow():
        if settings.env == "dev" and settings.dev_assume_admin:
            return SessionData(None, None, "admin")
        return SessionData(None, None, "guest")

    user: User | None = None
    if sess.user_id:
        user = await db.get(User, sess.user_id)
    return SessionData(sess, user, sess.role)


def require_roles(*roles: str) -> Callable[..., SessionData]:
    """Dependencia que asegura que la sesión tenga uno de los roles permitidos.

    Sin sesión (rol ``guest``) responde 401; con sesión pero otro rol, 403.
    """

    async def dep(sess: SessionData = Depends(current_session)) -> SessionData:
        if sess.role == "guest":
            raise HTTPException(status_code=401, detail="No autenticado")
        if sess.role not in roles:
            raise HTTPException(status_code=403, detail="No autorizado")
        return sess

    return dep


require_admin = require_roles(*ADMIN_ROLES)
require_login = require_roles("seller", *ADMIN_ROLES)


async def require_csrf(request: Request) -> None:
    """Valida el token CSRF en mutaciones."""

    if request.method in {"GET", "HEAD", "OPTIONS"}:
        return
    cookie = request.cookies.get(CSRF_COOKIE)
    header = request.headers.get("X-CSRF-Token")
    if not cookie or not header or cookie != header:
        raise HTTPException(status_code=403, detail="CSRF invalid")


_LOGIN_WINDOW = 15 * 60
_MAX_ATTEMPTS = 10
_login_attempts: dict[str, list[float]] = {}


def check_login_rate_limit(ip: str) -> None:
    """Aplica rate limit por IP para el login."""

    attempts = _login_attempts.get(ip, [])
    now = time.time()
    attempts = [t for t in attempts if now - t < _LOGIN_WINDOW]
    if len(attempts) >= _MAX_ATTEMPTS:
        raise HTTPException(status_code=429, detail="Demasiados intentos de login")
    _login_attempts[ip] = attempts


def record_failed_login(ip: str) -> None:
    _login_attempts.setdefault(ip, []).append(time.time())


def reset_login_attempts(ip: str) -> None:
    _login_attempts.pop(ip, None)


async def find_user_by_email(db: AsyncSession, email: str) -> User | None:
    res = await db.execute(select(User).where(func.lower(User.email) == email.strip().lower()))
    return res.scalar_one_or_none()


async def ensure_admin_user(db: AsyncSession, email: str, password: str, reset: bool = False) -> User:
    """Crea el admin inicial si no existe (idempotente). ``reset`` rehace el hash."""
    user = await find_user_by_email(db, email)
    if user is None:
        user = User(email=email.strip().lower(), name=email.split("@")[0], password_hash=hash_pw(password), role="admin")
        db.add(user)
        await db.commit()
        logger.info("Usuario admin creado: %s", user.email)
    elif reset:
        user.password_hash = hash_pw(password)
        await db.commit()
        logger.info("Password de admin reseteada: %s", user.email)
    return user


__all__ = [
    "hash_pw",
    "verify_pw",
    "create_session",
    "set_session_cookies",
    "current_session",
    "require_roles",
    "require_admin",
    "require_login",
    "require_csrf",
    "check_login_rate_limit",
    "record_failed_login",
    "reset_login_attempts",
    "find_user_by_email",
    "ensure_admin_user",
    "SessionData",
]
