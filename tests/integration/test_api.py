"""HTTP surface tests: routing, error rendering and the happy path."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from httpx import AsyncClient

API = "/api/v1"


async def _open_instance(client: AsyncClient, *, capacity: int = 4, target: int = 2, threshold: int | None = None) -> dict:
    resp = await client.post(f"{API}/quests", json={"title": "Morning Swim", "creator_id": 900, "base_xp": 50})
    assert resp.status_code == 201
    quest = resp.json()
    assert quest["status"] == "draft"

    resp = await client.post(f"{API}/quests/{quest['id']}/submit", json={"actor_id": 900})
    assert resp.status_code == 200
    resp = await client.post(f"{API}/quests/{quest['id']}/review", json={"reviewer_id": 1, "decision": "approved"})
    assert resp.json()["status"] == "open"

    day = (datetime.now(timezone.utc) + timedelta(days=2)).date()
    resp = await client.post(
        f"{API}/instances",
        json={
            "quest_id": quest["id"],
            "scheduled_date": day.isoformat(),
            "start_time": "18:00:00",
            "meeting_point": "North pier",
            "capacity": capacity,
            "target_squad_size": target,
            "squad_formation_threshold": threshold,
        },
    )
    assert resp.status_code == 201
    instance = resp.json()
    assert instance["status"] == "draft"
    assert instance["instance_slug"] == f"morning-swim-{day:%Y%m%d}"

    resp = await client.post(f"{API}/instances/{instance['id']}/publish", json={"actor_id": 1})
    assert resp.status_code == 200
    return resp.json()


class TestHealth:
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}

    async def test_ready_without_redis(self, client):
        resp = await client.get("/ready")
        assert resp.json() == {"status": "ready", "checks": {"database": "ok", "redis": "disabled"}}

    async def test_version(self, client):
        body = (await client.get("/version")).json()
        assert set(body) == {"version", "environment"}

    async def test_request_id_echoed(self, client):
        resp = await client.get("/health", headers={"X-Request-Id": "req-123"})
        assert resp.headers["X-Request-Id"] == "req-123"

    async def test_request_id_generated(self, client):
        resp = await client.get("/health")
        assert len(resp.headers["X-Request-Id"]) == 36


class TestLifecycleFlow:
    """Quest authoring through squad formation over HTTP."""

    async def test_signup_and_lock(self, client):
        instance = await _open_instance(client)
        assert instance["status"] == "recruiting"

        for user_id in (1, 2, 3, 4, 5):
            resp = await client.post(f"{API}/instances/{instance['id']}/signups", json={"user_id": user_id})
            assert resp.status_code == 201
        signups = (await client.get(f"{API}/instances/{instance['id']}/signups")).json()
        assert [s["status"] for s in signups] == ["confirmed"] * 4 + ["standby"]

        resp = await client.post(f"{API}/instances/{instance['id']}/lock", json={"actor_id": 1})
        assert resp.status_code == 200
        assert resp.json()["status"] == "locked"

        squads = (await client.get(f"{API}/instances/{instance['id']}/squads")).json()
        assert sorted(len(s["members"]) for s in squads) == [2, 2]

        events = (await client.get(f"{API}/instances/{instance['id']}/events")).json()
        types = [e["event_type"] for e in events]
        assert "status_change" in types
        assert "squad_assigned" in types

    async def test_auto_lock_on_threshold(self, client):
        instance = await _open_instance(client, threshold=2)
        for user_id in (1, 2):
            await client.post(f"{API}/instances/{instance['id']}/signups", json={"user_id": user_id})

        resp = await client.get(f"{API}/instances/{instance['id']}")
        assert resp.json()["status"] == "locked"

    async def test_cancel_promotes_standby(self, client):
        instance = await _open_instance(client, capacity=1)
        first = (await client.post(f"{API}/instances/{instance['id']}/signups", json={"user_id": 1})).json()
        await client.post(f"{API}/instances/{instance['id']}/signups", json={"user_id": 2})

        resp = await client.post(f"{API}/signups/{first['id']}/cancel", json={"reason": "sick", "actor_id": 1})
        assert resp.status_code == 200
        body = resp.json()
        assert body["signup"]["status"] == "dropped"
        assert [s["user_id"] for s in body["promoted"]] == [2]

    async def test_lock_without_participants_is_recorded(self, client):
        instance = await _open_instance(client)
        await client.post(f"{API}/instances/{instance['id']}/signups", json={"user_id": 1})

        resp = await client.post(f"{API}/instances/{instance['id']}/lock", json={"actor_id": 1})
        assert resp.status_code == 409
        assert resp.json()["code"] == "insufficient_participants"

        assert (await client.get(f"{API}/instances/{instance['id']}")).json()["status"] == "recruiting"
        events = (await client.get(f"{API}/events", params={"event_type": "squad_formation_failed"})).json()
        assert [e["instance_id"] for e in events] == [instance["id"]]


class TestErrors:
    async def test_duplicate_signup(self, client):
        instance = await _open_instance(client)
        await client.post(f"{API}/instances/{instance['id']}/signups", json={"user_id": 1})

        resp = await client.post(f"{API}/instances/{instance['id']}/signups", json={"user_id": 1})
        assert resp.status_code == 409
        assert resp.json()["code"] == "already_signed_up"

    async def test_signup_on_cancelled_instance(self, client):
        instance = await _open_instance(client)
        await client.post(f"{API}/instances/{instance['id']}/cancel", json={"reason": "storm", "actor_id": 1})

        resp = await client.post(f"{API}/instances/{instance['id']}/signups", json={"user_id": 1})
        assert resp.status_code == 409
        assert resp.json() == {
            "detail": "Signups for this quest are not available right now.",
            "code": "instance_not_open",
        }

    async def test_invalid_transition(self, client):
        instance = await _open_instance(client)
        resp = await client.post(f"{API}/instances/{instance['id']}/go-live", json={"actor_id": 1})
        assert resp.status_code == 409
        assert resp.json()["code"] == "invalid_transition"

    async def test_not_found(self, client):
        resp = await client.get(f"{API}/instances/999")
        assert resp.status_code == 404
        assert resp.json()["code"] == "not_found"

    async def test_validation_error(self, client):
        resp = await client.post(f"{API}/quests", json={"title": "x"})
        assert resp.status_code == 422
        body = resp.json()
        assert body["detail"] == "Validation error"
        assert body["errors"][0]["loc"] == ["body", "title"]


class TestProgressionEndpoints:
    async def test_award_and_level(self, client):
        resp = await client.post(f"{API}/users/5/xp", json={"amount": 120, "source": "admin_grant", "source_id": "bonus"})
        assert resp.json() == {"user_id": 5, "total_xp": 120, "granted": True}

        resp = await client.post(f"{API}/users/5/xp", json={"amount": 120, "source": "admin_grant", "source_id": "bonus"})
        assert resp.json()["granted"] is False

        level = (await client.get(f"{API}/users/5/level")).json()
        assert (level["level"], level["next_level_xp"]) == (2, 250)

        history = (await client.get(f"{API}/users/5/xp/history")).json()
        assert [t["amount"] for t in history] == [120]

    async def test_reconcile_reports_nothing_when_consistent(self, client):
        await client.post(f"{API}/users/5/xp", json={"amount": 10, "source": "admin_grant", "source_id": "a"})
        resp = await client.post(f"{API}/xp/reconcile")
        assert resp.json() == []

    async def test_trust_endpoints(self, client):
        resp = await client.get(f"{API}/trust/user/8")
        assert resp.json()["score"] == 50.0

        resp = await client.post(f"{API}/trust/user/8/rating", json={"rating": 5})
        assert resp.json()["score"] == 70.0

        resp = await client.post(f"{API}/trust/user/8/rating", json={"rating": 9})
        assert resp.status_code == 422

    async def test_achievement_check_with_nothing_earned(self, client):
        resp = await client.post(f"{API}/users/5/achievements/check")
        assert resp.json() == {"unlocked": []}
        assert (await client.get(f"{API}/users/5/achievements")).json() == []


class TestSquadEndpoints:
    async def test_persistent_squad_roundtrip(self, client):
        resp = await client.post(f"{API}/persistent-squads", json={"name": "Dawn Patrol", "leader_id": 1, "member_ids": [2]})
        assert resp.status_code == 201
        squad = resp.json()
        assert [m["user_id"] for m in squad["members"]] == [1, 2]

        resp = await client.post(f"{API}/persistent-squads/{squad['id']}/members", json={"leader_id": 2, "user_id": 3})
        assert resp.status_code == 403
        assert resp.json()["code"] == "not_squad_member"

    async def test_warm_up_over_http(self, client):
        instance = await _open_instance(client, capacity=2)
        for user_id in (1, 2):
            await client.post(f"{API}/instances/{instance['id']}/signups", json={"user_id": user_id})
        await client.post(f"{API}/instances/{instance['id']}/lock", json={"actor_id": 1})
        [squad] = (await client.get(f"{API}/instances/{instance['id']}/squads")).json()

        resp = await client.post(f"{API}/squads/{squad['id']}/warm-up", json={"actor_id": 1})
        assert resp.json()["status"] == "warming_up"

        for user_id in (1, 2):
            resp = await client.post(f"{API}/squads/{squad['id']}/readiness", json={"user_id": user_id})
        report = resp.json()
        assert report["is_ready"] is True
        assert report["status"] == "ready_for_review"

        resp = await client.post(f"{API}/squads/{squad['id']}/approve", json={"operator_id": 1})
        assert resp.json()["status"] == "confirmed"
        assert (await client.get(f"{API}/instances/{instance['id']}")).json()["squads_locked"] is True
