#!/usr/bin/env python
# NG-HEADER: Nombre de archivo: test_auth_api.py
# NG-HEADER: Ubicación: tests/test_auth_api.py
# NG-HEADER: Descripción: Pruebas de login por cookie, sesión actual y roles.
# NG-HEADER: Lineamientos: Ver AGENTS.md
import pytest

from services.auth import CSRF_COOKIE, SESSION_COOKIE, ensure_admin_user, hash_pw, verify_pw


def test_password_hash_roundtrip():
    h = hash_pw("secreto")
    assert h.startswith("$argon2id$")
    assert verify_pw("secreto", h)
    assert not verify_pw("otro", h)


@pytest.mark.asyncio
async def test_ensure_admin_user_is_idempotent(db_session):
    first = await ensure_admin_user(db_session, "Admin@Telas.local", "clave-1")
    again = await ensure_admin_user(db_session, "admin@telas.local", "clave-2")
    assert first.id == again.id
    assert first.email == "admin@telas.local"
    assert verify_pw("clave-1", again.password_hash)
    reset = await ensure_admin_user(db_session, "admin@telas.local", "clave-2", reset=True)
    assert verify_pw("clave-2", reset.password_hash)


@pytest.mark.asyncio
@pytest.mark.no_auth_override
async def test_login_sets_cookies_and_me(client, db_session):
    await ensure_admin_user(db_session, "admin@telas.local", "clave-1")

    r = await client.get("/auth/me")
    assert r.json() == {"is_authenticated": False, "role": "guest"}

    r = await client.post("/auth/login", json={"email": "ADMIN@telas.local", "password": "clave-1"})
    assert r.status_code == 200, r.text
    assert r.json()["role"] == "admin"
    assert SESSION_COOKIE in r.cookies
    assert CSRF_COOKIE in r.cookies

    me = await client.get("/auth/me")
    body = me.json()
    assert body["is_authenticated"] is True
    assert body["role"] == "admin"
    assert body["user"]["email"] == "admin@telas.local"

    # Con sesión admin real ya se puede listar
    r = await client.get("/packing-list/list-files")
    assert r.status_code == 200

    r = await client.post("/auth/logout")
    assert r.status_code == 200
    me = await client.get("/auth/me")
    assert me.json()["role"] == "guest"


@pytest.mark.asyncio
@pytest.mark.no_auth_override
async def test_login_wrong_password(client, db_session):
    await ensure_admin_user(db_session, "admin@telas.local", "clave-1")
    r = await client.post("/auth/login", json={"email": "admin@telas.local", "password": "nope"})
    assert r.status_code == 401
    assert r.json()["detail"] == "Credenciales inválidas"
    r = await client.post("/auth/login", json={"email": "nadie@telas.local", "password": "nope"})
    assert r.status_code == 401
