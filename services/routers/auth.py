# NG-HEADER: Nombre de archivo: auth.py
# NG-HEADER: Ubicación: services/routers/auth.py
# NG-HEADER: Descripción: Endpoints de login, logout y sesión actual.
# NG-HEADER: Lineamientos: Ver AGENTS.md
"""Endpoints de autenticación."""

import logging
import secrets

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from db.session import get_session
from services.auth import (
    SessionData,
    check_login_rate_limit,
    create_session,
    current_session,
    find_user_by_email,
    record_failed_login,
    require_csrf,
    reset_login_attempts,
    set_session_cookies,
    verify_pw,
)
from services.ratelimit import rate_limit


router = APIRouter(prefix="/auth", tags=["auth"])

logger = logging.getLogger("telas.auth")


class LoginIn(BaseModel):
    email: str
    password: str


def _user_out(user) -> dict:
    return {"id": user.id, "email": user.email, "name": user.name, "role": user.role}


@router.post(
    "/login",
    dependencies=[Depends(rate_limit("auth", "Demasiados intentos de inicio de sesión. Espera un momento."))],
)
async def login(payload: LoginIn, request: Request, db: AsyncSession = Depends(get_session)):
    t0 = secrets.token_hex(4)
    ip = request.client.host if request.client else "unknown"
    logger.debug("[login:start] tag=%s ip=%s email=%s", t0, ip, payload.email)
    check_login_rate_limit(ip)

    user = await find_user_by_email(db, payload.email or "")
    if not user or not verify_pw(payload.password, user.password_hash):
        logger.debug("[login:fail] tag=%s email=%s found=%s", t0, payload.email, bool(user))
        record_failed_login(ip)
        raise HTTPException(status_code=401, detail="Credenciales inválidas")

    reset_login_attempts(ip)
    prev = await current_session(request, db)
    sess, csrf = await create_session(db, user.role, request, user, prev_session=prev.session)
    resp = JSONResponse(_user_out(user))
    await set_session_cookies(resp, sess.id, csrf, request)
    logger.info("[login:ok] user_id=%s role=%s", user.id, user.role)
    return resp


@router.post("/logout", dependencies=[Depends(require_csrf)])
async def logout(request: Request, db: AsyncSession = Depends(get_session)):
    prev = await current_session(request, db)
    new_sess, csrf = await create_session(db, "guest", request, prev_session=prev.session)
    resp = JSONResponse({"status": "ok"})
    await set_session_cookies(resp, new_sess.id, csrf, request)
    return resp


@router.get("/me")
async def me(sess: SessionData = Depends(current_session)):
    if sess.role == "guest":
        return {"is_authenticated": False, "role": "guest"}
    data = {"is_authenticated": True, "role": sess.role}
    if sess.user:
        data["user"] = _user_out(sess.user)
    return data
