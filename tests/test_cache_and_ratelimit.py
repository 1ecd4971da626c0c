#!/usr/bin/env python
# NG-HEADER: Nombre de archivo: test_cache_and_ratelimit.py
# NG-HEADER: Ubicación: tests/test_cache_and_ratelimit.py
# NG-HEADER: Descripción: Pruebas del cache Redis de lecturas y del rate limiting por IP.
# NG-HEADER: Lineamientos: Ver AGENTS.md
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from starlette.requests import Request

from conftest import FakeRedis

from services.cache import (
    READ_CACHE_PATTERNS,
    ResponseCache,
    cache_key,
    invalidate_read_caches,
    normalize_query,
)
from services.ratelimit import LIMITERS, check, client_ip, reset_limits


def test_cache_key_uses_sorted_query():
    search = normalize_query([("tela", "LINO"), ("color", "AZUL")])
    assert search == "?color=AZUL&tela=LINO"
    assert normalize_query([]) == ""
    assert cache_key("api:s3:get-rolls", "/packing-list/get-rolls", search) == (
        "cache:api:s3:get-rolls:pathname:/packing-list/get-rolls:search:?color=AZUL&tela=LINO"
    )


@pytest.mark.asyncio
async def test_response_cache_roundtrip_and_pattern_invalidation():
    redis = FakeRedis()
    cache = ResponseCache(redis, ttl=60)
    await cache.set_json("cache:api:s3:get-rolls:pathname:/a:search:", [{"lot": "L1"}])
    await cache.set_json("cache:api:packing-list:order-rolls:pathname:/b:search:?oc=1", {"oc": "1"}, ttl=5)
    await cache.set_json("cache:api:clientes:pathname:/c:search:", [])
    assert await cache.get_json("cache:api:s3:get-rolls:pathname:/a:search:") == [{"lot": "L1"}]
    assert redis.ttls["cache:api:s3:get-rolls:pathname:/a:search:"] == 60
    assert redis.ttls["cache:api:packing-list:order-rolls:pathname:/b:search:?oc=1"] == 5

    patterns = await invalidate_read_caches(cache)
    assert patterns == list(READ_CACHE_PATTERNS)
    assert list(redis.data) == ["cache:api:clientes:pathname:/c:search:"]


@pytest.mark.asyncio
async def test_disabled_cache_is_a_noop():
    cache = ResponseCache(None)
    assert not cache.enabled
    assert await cache.set_json("k", 1) is False
    assert await cache.get_json("k") is None
    assert await cache.invalidate_pattern("cache:*") == 0


class BrokenRedis(FakeRedis):
    async def get(self, key):
        raise RedisConnectionError("caído")

    async def setex(self, key, ttl, value):
        raise RedisConnectionError("caído")

    async def scan_iter(self, match=None, count=None):
        raise RedisConnectionError("caído")
        yield  # pragma: no cover


@pytest.mark.asyncio
async def test_redis_errors_never_break_requests():
    cache = ResponseCache(BrokenRedis())
    assert await cache.get_json("k") is None
    assert await cache.set_json("k", 1) is False
    assert await cache.invalidate_pattern("cache:*") == 0


@pytest.mark.asyncio
async def test_corrupt_cache_entry_is_ignored():
    redis = FakeRedis()
    redis.data["k"] = "{no-json"
    assert await ResponseCache(redis).get_json("k") is None


def _request(headers: dict) -> Request:
    raw = [(k.lower().encode(), v.encode()) for k, v in headers.items()]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw, "query_string": b""})


def test_client_ip_precedence():
    assert client_ip(_request({"X-Forwarded-For": "1.1.1.1, 10.0.0.1", "CF-Connecting-IP": "3.3.3.3"})) == "1.1.1.1"
    assert client_ip(_request({"True-Client-IP": "2.2.2.2", "CF-Connecting-IP": "3.3.3.3"})) == "2.2.2.2"
    assert client_ip(_request({"CF-Connecting-IP": "3.3.3.3"})) == "3.3.3.3"
    assert client_ip(_request({})) == "127.0.0.1"


def test_sliding_window_blocks_then_recovers():
    reset_limits()
    spec = LIMITERS["auth"]
    for i in range(spec.max_requests):
        allowed, limit, remaining, _ = check("auth", "9.9.9.9", now=1000 + i)
        assert allowed
        assert remaining == spec.max_requests - i - 1
    allowed, _, remaining, reset = check("auth", "9.9.9.9", now=1010)
    assert not allowed and remaining == 0
    assert reset == 1000 + spec.window
    # Otra IP y otro limitador llevan cuentas separadas
    assert check("auth", "8.8.8.8", now=1010)[0]
    assert check("api", "9.9.9.9", now=1010)[0]
    # Al salir de la ventana el primer intento deja lugar
    assert check("auth", "9.9.9.9", now=1000 + spec.window + 0.5)[0]
