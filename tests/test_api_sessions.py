"""
CrowdBeat Session Core
Tests — session HTTP API (lifecycle, participation, feedback, song queue).
"""

import pytest

from conftest import ALICE, BOB, HOST, headers

BASE = "/api/v1/sessions"


def _create(client, user_id=HOST, role="creator", **data):
    payload = {"title": "Sunday Session", "genre": "house"}
    payload.update(data)
    return client.post(BASE, json=payload, headers=headers(user_id, role=role))


@pytest.fixture()
def sid(client):
    """Id of a draft session created through the API by HOST."""
    return _create(client).get_json()["id"]


@pytest.fixture()
def started(client, sid):
    client.post(f"{BASE}/{sid}/start", headers=headers(HOST))
    client.post(f"{BASE}/{sid}/join", headers=headers(ALICE))
    client.post(f"{BASE}/{sid}/join", headers=headers(BOB))
    return sid


class TestSessionCrudApi:
    def test_create(self, client, events):
        res = _create(client, tags=["chill"], settings={"voting_system": "weighted"})
        assert res.status_code == 201
        body = res.get_json()
        assert body["status"] == "draft"
        assert body["stage"] == 1
        assert body["host_id"] == HOST
        assert len(body["session_code"]) == 6
        assert body["max_participants"] == 100
        assert body["settings"]["voting_system"] == "weighted"
        assert body["stats"]["total_participants"] == 1
        assert "session:created" in events.names()

    def test_create_requires_auth(self, client):
        res = client.post(BASE, json={"title": "x"})
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_plain_user_cannot_create(self, client):
        res = _create(client, user_id=ALICE, role="user")
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_create_validation(self, client):
        res = _create(client, title="")
        assert res.status_code == 400
        assert res.get_json()["details"] == {"title": "required"}

    def test_unknown_setting(self, client):
        res = _create(client, settings={"explode": True})
        assert res.status_code == 400

    def test_non_json_body_rejected(self, client):
        res = client.post(BASE, data="title=x", headers={**headers(HOST, role="creator"),
                                                         "Content-Type": "text/plain"})
        assert res.status_code == 415

    def test_get_and_by_code(self, client, sid):
        body = client.get(f"{BASE}/{sid}").get_json()
        res = client.get(f"{BASE}/code/{body['session_code'].lower()}")
        assert res.status_code == 200
        assert res.get_json()["id"] == sid

    def test_get_unknown(self, client):
        res = client.get(f"{BASE}/does-not-exist")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_list_paginates(self, client):
        for i in range(3):
            _create(client, title=f"Session {i}")
        res = client.get(f"{BASE}?limit=2")
        body = res.get_json()
        assert body["total"] == 3
        assert len(body["items"]) == 2

    def test_update_requires_staff(self, client, sid):
        res = client.put(f"{BASE}/{sid}", json={"title": "Hijacked"}, headers=headers(ALICE))
        assert res.status_code == 403
        res = client.put(f"{BASE}/{sid}", json={"title": "Renamed"}, headers=headers(HOST))
        assert res.status_code == 200
        assert res.get_json()["title"] == "Renamed"


class TestTransitionsApi:
    def test_full_pipeline(self, client, sid):
        res = client.post(f"{BASE}/{sid}/start", headers=headers(HOST))
        assert res.get_json()["status"] == "active"
        expected = ["lyrics-open", "lyrics-voting", "generation", "song-voting", "completed"]
        for status in expected:
            res = client.post(f"{BASE}/{sid}/advance", headers=headers(HOST))
            assert res.status_code == 200
            assert res.get_json()["status"] == status
        res = client.post(f"{BASE}/{sid}/advance", headers=headers(HOST))
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_INVALID_TRANSITION"

    def test_participant_cannot_advance(self, client, started):
        res = client.post(f"{BASE}/{started}/advance", headers=headers(ALICE))
        assert res.status_code == 403

    def test_pause_resume(self, client, started):
        client.post(f"{BASE}/{started}/advance", headers=headers(HOST))
        paused = client.post(f"{BASE}/{started}/pause", headers=headers(HOST)).get_json()
        assert paused["status"] == "paused"
        assert paused["previous_status"] == "lyrics-open"
        assert paused["stage"] == 2
        resumed = client.post(f"{BASE}/{started}/resume", headers=headers(HOST)).get_json()
        assert resumed["status"] == "lyrics-open"

    def test_cancel_host_only(self, client, started):
        client.post(f"{BASE}/{started}/promote/{ALICE}", headers=headers(HOST))
        res = client.post(f"{BASE}/{started}/cancel", headers=headers(ALICE))
        assert res.status_code == 403
        res = client.post(f"{BASE}/{started}/cancel", headers=headers(HOST))
        assert res.get_json()["status"] == "cancelled"

    def test_admin_can_cancel(self, client, started):
        res = client.post(f"{BASE}/{started}/cancel", headers=headers("root", role="admin"))
        assert res.status_code == 200


class TestParticipationApi:
    def test_join_status_codes(self, client, sid):
        first = client.post(f"{BASE}/{sid}/join", headers=headers(ALICE))
        assert first.status_code == 201
        assert first.get_json()["created"] is True
        again = client.post(f"{BASE}/{sid}/join", headers=headers(ALICE))
        assert again.status_code == 200
        assert again.get_json()["created"] is False

    def test_leave_and_list(self, client, started):
        assert client.post(f"{BASE}/{started}/leave", headers=headers(BOB)).status_code == 200
        active = client.get(f"{BASE}/{started}/participants").get_json()
        assert {p["user_id"] for p in active["items"]} == {HOST, ALICE}
        everyone = client.get(f"{BASE}/{started}/participants?include_inactive=true").get_json()
        assert everyone["total"] == 3

    def test_host_leave_refused(self, client, started):
        res = client.post(f"{BASE}/{started}/leave", headers=headers(HOST))
        assert res.status_code == 400

    def test_permissions_endpoint(self, client, started):
        perms = client.get(f"{BASE}/{started}/permissions", headers=headers(ALICE, user_type="technical")).get_json()
        assert perms["is_participant"] is True
        assert perms["can_submit_options"] is True
        assert perms["can_kick"] is False

    def test_permissions_explain_vote_weight(self, client, started):
        perms = client.get(f"{BASE}/{started}/permissions", headers=headers(ALICE, reputation=2500)).get_json()
        assert perms["vote_weight"] == {
            "base_weight": 1.0,
            "reputation_bonus": 2.5,
            "total_weight": 3.5,
            "level": "gold",
        }
        anonymous = client.get(f"{BASE}/{started}/permissions").get_json()
        assert anonymous["vote_weight"]["total_weight"] == 1.0
        assert anonymous["vote_weight"]["level"] == "bronze"


class TestFeedbackAndStatsApi:
    def test_feedback(self, client, started):
        res = client.post(f"{BASE}/{started}/feedback", json={"rating": 4, "comment": "nice"},
                          headers=headers(ALICE))
        assert res.status_code == 201
        assert res.get_json()["rating"] == 4

    def test_feedback_validation(self, client, started):
        res = client.post(f"{BASE}/{started}/feedback", json={"rating": 9}, headers=headers(ALICE))
        assert res.status_code == 400

    def test_stats_staff_only(self, client, started):
        assert client.get(f"{BASE}/{started}/stats", headers=headers(ALICE)).status_code == 403
        res = client.get(f"{BASE}/{started}/stats", headers=headers(HOST))
        assert res.status_code == 200
        assert res.get_json()["participants"]["active"] == 3


class TestSongsApi:
    def test_queue_vote_and_results(self, client, started):
        res = client.post(f"{BASE}/{started}/songs", json={"title": "Sunrise"}, headers=headers(ALICE))
        assert res.status_code == 201
        song_id = res.get_json()["id"]

        for _ in range(4):
            client.post(f"{BASE}/{started}/advance", headers=headers(HOST))

        res = client.post(f"{BASE}/{started}/songs/{song_id}/vote", headers=headers(BOB, reputation=500))
        assert res.status_code == 200
        assert res.get_json()["weighted_votes"] == 1.5
        assert res.get_json()["has_voted"] is True

        dup = client.post(f"{BASE}/{started}/songs/{song_id}/vote", headers=headers(BOB))
        assert dup.status_code == 409

        results = client.get(f"{BASE}/{started}/songs/results").get_json()
        assert results["results"][0]["votes"] == 1

        res = client.delete(f"{BASE}/{started}/songs/{song_id}/vote", headers=headers(BOB))
        assert res.get_json()["votes"] == 0

    def test_remove_and_reorder(self, client, started):
        ids = [
            client.post(f"{BASE}/{started}/songs", json={"title": t}, headers=headers(ALICE)).get_json()["id"]
            for t in ("A", "B")
        ]
        res = client.put(f"{BASE}/{started}/songs/reorder", json={"song_ids": ids[::-1]}, headers=headers(HOST))
        assert [s["title"] for s in res.get_json()["items"]] == ["B", "A"]

        assert client.delete(f"{BASE}/{started}/songs/{ids[0]}", headers=headers(BOB)).status_code == 403
        assert client.delete(f"{BASE}/{started}/songs/{ids[0]}", headers=headers(ALICE)).status_code == 200
        assert client.get(f"{BASE}/{started}/songs").get_json()["total"] == 1
