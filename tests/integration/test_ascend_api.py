"""End-to-end API tests against the app with a SQLite database and a mock publisher."""

from __future__ import annotations

from datetime import timedelta

import pytest

from ascend.auth.jwt import create_access_token
from ascend.db.models import Badge
from ascend.gamification.leaderboard_service import refresh_leaderboard
from ascend.gamification.xp_service import award_xp

API = "/api/v1"


async def _start(client, headers, challenge_id: int) -> dict:
    resp = await client.post(f"{API}/challenges/{challenge_id}/start", headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}
        assert resp.headers["X-Request-Id"]

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client):
        resp = await client.get("/health", headers={"X-Request-Id": "req-42"})
        assert resp.headers["X-Request-Id"] == "req-42"

    @pytest.mark.asyncio
    async def test_ready(self, client):
        resp = await client.get("/ready")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ready"
        assert body["checks"] == {"database": "ok", "redis": "ok"}

    @pytest.mark.asyncio
    async def test_version(self, client):
        body = (await client.get("/version")).json()
        assert set(body) == {"version", "environment"}


class TestAuthentication:
    """Protected routes require a valid bearer token."""

    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        resp = await client.get(f"{API}/users/me/progress")
        assert resp.status_code == 401
        assert resp.json()["error_code"] == "NotAuthenticated"
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_garbage_token(self, client):
        resp = await client.get(f"{API}/users/me/progress", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_expired_token(self, client, make_user):
        uid = await make_user()
        token = create_access_token(uid, expires_in=timedelta(seconds=-30))
        resp = await client.get(f"{API}/users/me/progress", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Token has expired"

    @pytest.mark.asyncio
    async def test_start_requires_token(self, client, make_challenge):
        cid = await make_challenge({"posts": 1})
        resp = await client.post(f"{API}/challenges/{cid}/start")
        assert resp.status_code == 401


class TestChallengeFlow:
    """Start, report progress, complete, abandon."""

    @pytest.mark.asyncio
    async def test_catalogue(self, client, make_challenge):
        await make_challenge({"posts": 1}, title="Visible")
        await make_challenge({"posts": 1}, title="Hidden", is_active=False)

        resp = await client.get(f"{API}/challenges")
        assert resp.status_code == 200
        assert [c["title"] for c in resp.json()["challenges"]] == ["Visible"]

        resp = await client.get(f"{API}/challenges", params={"active_only": "false"})
        assert len(resp.json()["challenges"]) == 2

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, client, make_user, make_challenge, auth_headers, publisher):
        uid = await make_user()
        cid = await make_challenge({"posts": 3, "comments": 5}, xp_reward=150)
        headers = auth_headers(uid)

        started = await _start(client, headers, cid)
        assert started["status"] == "in_progress"
        assert started["progress"] == {}
        assert started["progress_percentage"] == 0
        assert started["challenge"]["id"] == cid

        ucid = started["id"]
        resp = await client.post(
            f"{API}/users/me/challenges/{ucid}/progress", headers=headers,
            json={"progress": {"posts": 3}},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["updated"] is True
        assert body["completed"] is False
        assert body["user_challenge"]["progress_percentage"] == 50

        resp = await client.post(
            f"{API}/users/me/challenges/{ucid}/progress", headers=headers,
            json={"progress": {"comments": 5}},
        )
        body = resp.json()
        assert body["completed"] is True
        assert body["user_challenge"]["status"] == "completed"
        assert body["user_challenge"]["xp_earned"] == 150
        assert body["user_challenge"]["completed_at"] is not None

        resp = await client.post(
            f"{API}/users/me/challenges/{ucid}/progress", headers=headers,
            json={"progress": {"comments": 6}},
        )
        assert resp.status_code == 409
        assert resp.json()["error_code"] == "ChallengeClosed"

        progress = (await client.get(f"{API}/users/me/progress", headers=headers)).json()
        assert progress["progress"]["xp"] == 150
        assert progress["progress"]["challenges_completed"] == 1
        assert progress["progress"]["total_challenges_started"] == 1
        assert progress["level_info"] == {
            "level": 2,
            "xp_required": 100,
            "xp_for_next_level": 200,
            "progress_percentage": 50,
        }

        channels = {c.args[0] for c in publisher.publish.await_args_list}
        assert {"pubsub:challenge_updated", "pubsub:xp_awarded", "pubsub:level_up"} <= channels

    @pytest.mark.asyncio
    async def test_start_twice_conflicts(self, client, make_user, make_challenge, auth_headers):
        uid = await make_user()
        cid = await make_challenge({"posts": 1})
        headers = auth_headers(uid)
        await _start(client, headers, cid)

        resp = await client.post(f"{API}/challenges/{cid}/start", headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error_code"] == "AlreadyStarted"

    @pytest.mark.asyncio
    async def test_start_unknown_challenge(self, client, make_user, auth_headers):
        uid = await make_user()
        resp = await client.post(f"{API}/challenges/9999/start", headers=auth_headers(uid))
        assert resp.status_code == 404
        assert resp.json()["error_code"] == "NotFound"

    @pytest.mark.asyncio
    async def test_abandon_then_progress(self, client, make_user, make_challenge, auth_headers):
        uid = await make_user()
        cid = await make_challenge({"posts": 2})
        headers = auth_headers(uid)
        ucid = (await _start(client, headers, cid))["id"]

        resp = await client.post(f"{API}/users/me/challenges/{ucid}/abandon", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["status"] == "failed"

        resp = await client.post(
            f"{API}/users/me/challenges/{ucid}/progress", headers=headers,
            json={"progress": {"posts": 2}},
        )
        assert resp.status_code == 409

        failed = (await client.get(
            f"{API}/users/me/challenges", headers=headers, params={"status": "failed"},
        )).json()["challenges"]
        assert [c["id"] for c in failed] == [ucid]

    @pytest.mark.asyncio
    async def test_other_users_attempt_is_hidden(self, client, make_user, make_challenge, auth_headers):
        owner = await make_user()
        other = await make_user()
        cid = await make_challenge({"posts": 1})
        ucid = (await _start(client, auth_headers(owner), cid))["id"]

        resp = await client.post(
            f"{API}/users/me/challenges/{ucid}/progress", headers=auth_headers(other),
            json={"progress": {"posts": 1}},
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_non_numeric_progress_rejected(self, client, make_user, make_challenge, auth_headers):
        uid = await make_user()
        cid = await make_challenge({"posts": 1})
        headers = auth_headers(uid)
        ucid = (await _start(client, headers, cid))["id"]

        resp = await client.post(
            f"{API}/users/me/challenges/{ucid}/progress", headers=headers,
            json={"progress": {"posts": "many"}},
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_create_challenge(self, client, make_user, auth_headers):
        uid = await make_user()
        payload = {
            "title": "Ship it",
            "description": "Publish two pitches",
            "category": "creativity",
            "difficulty": "beginner",
            "xp_reward": 40,
            "requirements": {"pitches": 2},
        }

        resp = await client.post(f"{API}/challenges", headers=auth_headers(uid), json=payload)
        assert resp.status_code == 201
        assert resp.json()["requirements"] == {"pitches": 2}

        payload["requirements"] = {"pitches": -1}
        resp = await client.post(f"{API}/challenges", headers=auth_headers(uid), json=payload)
        assert resp.status_code == 422
        assert resp.json()["error_code"] == "InvalidRequirements"


class TestProgressViews:
    """Progress, XP history, activity, levels, profile completion."""

    @pytest.mark.asyncio
    async def test_no_progress_yet(self, client, make_user, auth_headers):
        uid = await make_user()
        resp = await client.get(f"{API}/users/me/progress", headers=auth_headers(uid))
        assert resp.status_code == 200
        assert resp.json() == {"progress": None, "level_info": None}

    @pytest.mark.asyncio
    async def test_history_and_activity(self, client, session_factory, make_user, auth_headers):
        uid = await make_user()
        async with session_factory() as db:
            await award_xp(db, None, uid, 25, "pitch_created", reference_id="p1")
            await award_xp(db, None, uid, 10, "mystery_bonus")

        headers = auth_headers(uid)
        history = (await client.get(f"{API}/users/me/xp/history", headers=headers)).json()
        assert history["total"] == 2
        assert [e["amount"] for e in history["entries"]] == [10, 25]

        items = (await client.get(f"{API}/users/me/activity", headers=headers)).json()["items"]
        assert [i["label"] for i in items] == ["Earned XP", "Created a new pitch"]

        limited = (await client.get(f"{API}/users/me/activity", headers=headers, params={"limit": 1})).json()
        assert len(limited["items"]) == 1

    @pytest.mark.asyncio
    async def test_levels(self, client):
        body = (await client.get(f"{API}/levels", params={"max_level": 3})).json()
        assert body["xp_per_level"] == 100
        assert [row["cumulative"] for row in body["levels"]] == [0, 100, 200]

    @pytest.mark.asyncio
    async def test_profile_completion(self, client, make_user, auth_headers):
        uid = await make_user(full_name="Amara Obi", bio="Solar", location="Lagos")
        resp = await client.post(f"{API}/users/me/profile-completion", headers=auth_headers(uid))
        assert resp.status_code == 200
        assert resp.json() == {"profile_completion_percentage": 30, "next_step": "Profile Image"}

    @pytest.mark.asyncio
    async def test_profile_completion_for_deleted_account(self, client, auth_headers):
        resp = await client.post(f"{API}/users/me/profile-completion", headers=auth_headers(4242))
        assert resp.status_code == 401
        assert resp.json()["error_code"] == "NotAuthenticated"


class TestLeaderboardApi:
    """Reading refreshed leaderboards."""

    @pytest.mark.asyncio
    async def test_leaderboard_and_rank(self, client, session_factory, make_user, auth_headers):
        top = await make_user(username="top")
        second = await make_user(username="second")
        idle = await make_user(username="idle")
        async with session_factory() as db:
            await award_xp(db, None, top, 300, "other")
            await award_xp(db, None, second, 120, "other")
            await refresh_leaderboard(db, None, "weekly")

        resp = await client.get(f"{API}/leaderboard", params={"window": "weekly"}, headers=auth_headers(second))
        assert resp.status_code == 200
        body = resp.json()
        assert body["window"] == "weekly"
        assert [(e["rank"], e["username"], e["is_current_user"]) for e in body["entries"]] == [
            (1, "top", False),
            (2, "second", True),
        ]
        assert body["entries"][0]["window_xp"] == 300

        anonymous = (await client.get(f"{API}/leaderboard")).json()
        assert not any(e["is_current_user"] for e in anonymous["entries"])

        rank = (await client.get(f"{API}/users/me/rank", headers=auth_headers(top))).json()
        assert rank == {"window": "weekly", "rank": 1, "window_xp": 300, "total": 2, "percentile": 50.0}

        unranked = (await client.get(f"{API}/users/me/rank", headers=auth_headers(idle))).json()
        assert unranked["rank"] == 0
        assert unranked["total"] == 2

    @pytest.mark.asyncio
    async def test_unknown_window(self, client):
        resp = await client.get(f"{API}/leaderboard", params={"window": "daily"})
        assert resp.status_code == 404
        assert resp.json()["error_code"] == "NotFound"


class TestBadgesApi:
    @pytest.mark.asyncio
    async def test_badge_from_completed_challenge(
        self, client, session_factory, make_user, make_challenge, auth_headers,
    ):
        uid = await make_user()
        async with session_factory() as db:
            badge = Badge(slug="pitch_perfect", name="Pitch Perfect", description="d", icon="target", xp_reward=75)
            db.add(badge)
            await db.commit()
            badge_id = badge.id
        cid = await make_challenge({"pitches": 3}, xp_reward=150, badge_id=badge_id)
        headers = auth_headers(uid)
        ucid = (await _start(client, headers, cid))["id"]

        await client.post(
            f"{API}/users/me/challenges/{ucid}/progress", headers=headers,
            json={"progress": {"pitches": 3}},
        )

        catalogue = (await client.get(f"{API}/badges")).json()["badges"]
        assert [b["slug"] for b in catalogue] == ["pitch_perfect"]

        mine = (await client.get(f"{API}/users/me/badges", headers=headers)).json()
        assert mine["total_available"] == 1
        assert mine["total_earned"] == 1
        assert mine["earned"][0]["badge"]["slug"] == "pitch_perfect"
        assert mine["earned"][0]["metadata"] == {"challenge_id": cid}

        progress = (await client.get(f"{API}/users/me/progress", headers=headers)).json()["progress"]
        assert progress["xp"] == 225
        assert progress["badges_earned"] == 1

    @pytest.mark.asyncio
    async def test_badge_by_slug(self, client, session_factory):
        async with session_factory() as db:
            db.add(Badge(slug="connector", name="Connector", description="d", icon="link", xp_reward=100))
            await db.commit()

        resp = await client.get(f"{API}/badges/connector")
        assert resp.status_code == 200
        assert resp.json()["name"] == "Connector"
        assert resp.json()["xp_reward"] == 100

        missing = await client.get(f"{API}/badges/nope")
        assert missing.status_code == 404
        assert missing.json()["error_code"] == "NotFound"
