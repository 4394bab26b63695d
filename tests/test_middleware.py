"""Tests for middleware wiring and optional Redis."""

from __future__ import annotations

from questline.redis_client import get_redis_or_none, init_redis


class TestCors:
    async def test_preflight_from_configured_origin(self, client):
        resp = await client.options(
            "/api/v1/quests",
            headers={"Origin": "http://localhost:5173", "Access-Control-Request-Method": "POST"},
        )
        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "http://localhost:5173"

    async def test_request_id_exposed(self, client):
        resp = await client.get("/health", headers={"Origin": "http://localhost:5173"})
        assert "X-Request-Id" in resp.headers["access-control-expose-headers"]


class TestRedisOptional:
    async def test_empty_url_leaves_fan_out_disabled(self):
        await init_redis("")
        assert get_redis_or_none() is None
