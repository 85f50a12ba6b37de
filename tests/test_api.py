"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from stagedoor.api import app
from stagedoor.errors import Unavailable
from stagedoor.metrics import metrics
from stagedoor.options import StagedoorOptions


def as_user(user_id):
    return {"X-User-Id": user_id}


@pytest.fixture
def client(stagedoor_http):
    return stagedoor_http


@pytest.fixture
def group(client):
    """Group with alice (admin), bob and carol."""
    response = client.post(
        "/conversations",
        json={"kind": "group", "participant_ids": ["bob", "carol"], "name": "Crew"},
        headers=as_user("alice"),
    )
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def direct(client):
    response = client.post(
        "/conversations",
        json={"kind": "direct", "participant_ids": ["bob"]},
        headers=as_user("alice"),
    )
    assert response.status_code == 201
    return response.json()


def post_message(client, conversation_id, sender_id, count=1):
    store = client.app.state.store
    for i in range(count):
        store.insert_message(conversation_id, sender_id, f"Message {i + 1}")


class TestHealth:
    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert "X-Response-Time-Ms" in response.headers

    def test_metrics(self, client, group):
        client.get(f"/conversations/{group['conversation_id']}", headers=as_user("alice"))

        data = client.get("/metrics").json()
        assert "GET conversations/detail" in data["requests"]
        assert "get_conversation" in data["store_operations"]


class TestIdentity:
    def test_missing_user_id(self, client):
        response = client.get("/conversations")
        assert response.status_code == 401

    def test_blank_user_id(self, client):
        response = client.get("/conversations", headers={"X-User-Id": "  "})
        assert response.status_code == 401


class TestGatewayToken:
    @pytest.fixture
    def gated(self):
        app.state.options = StagedoorOptions.for_in_memory(gateway_token="s3cret")
        try:
            with TestClient(app) as client:
                yield client
        finally:
            del app.state.options

    def test_token_required(self, gated):
        response = gated.get("/conversations", headers=as_user("alice"))
        assert response.status_code == 401

    def test_wrong_token(self, gated):
        response = gated.get(
            "/conversations",
            headers={**as_user("alice"), "Authorization": "Bearer nope"},
        )
        assert response.status_code == 403

    def test_correct_token(self, gated):
        response = gated.get(
            "/conversations",
            headers={**as_user("alice"), "Authorization": "Bearer s3cret"},
        )
        assert response.status_code == 200

    def test_metrics_gated(self, gated):
        assert gated.get("/metrics").status_code == 401
        assert gated.get("/metrics", headers={"Authorization": "Bearer s3cret"}).status_code == 200

    def test_unread_count_with_wrong_token_is_zero(self, gated):
        response = gated.get(
            "/conversations/unread-count",
            headers={**as_user("alice"), "Authorization": "Bearer nope"},
        )
        assert response.status_code == 200
        assert response.json() == {"count": 0}

    def test_metrics_wrong_token(self, gated):
        response = gated.get("/metrics", headers={"Authorization": "Bearer s3cre7"})
        assert response.status_code == 403


class TestConversations:
    def test_create_group(self, group):
        assert group["created"] is True
        assert group["kind"] == "group"
        roles = {p["user_id"]: p["role"] for p in group["participants"]}
        assert roles == {"alice": "admin", "bob": "member", "carol": "member"}

    def test_create_direct_twice_returns_existing(self, client, direct):
        response = client.post(
            "/conversations",
            json={"kind": "direct", "participant_ids": ["alice"]},
            headers=as_user("bob"),
        )
        assert response.status_code == 200
        assert response.json()["created"] is False
        assert response.json()["conversation_id"] == direct["conversation_id"]

    def test_create_direct_invalid(self, client):
        response = client.post(
            "/conversations",
            json={"kind": "direct", "participant_ids": ["bob", "carol"]},
            headers=as_user("alice"),
        )
        assert response.status_code == 400
        assert response.json()["kind"] == "InvalidOperation"

    def test_create_rejects_empty_ids(self, client):
        response = client.post(
            "/conversations",
            json={"participant_ids": [""]},
            headers=as_user("alice"),
        )
        assert response.status_code == 422

    def test_list_with_unread_counts(self, client, group):
        cid = group["conversation_id"]
        post_message(client, cid, "alice", count=2)

        response = client.get("/conversations", headers=as_user("bob"))

        assert response.status_code == 200
        rows = response.json()
        assert len(rows) == 1
        assert rows[0]["conversation_id"] == cid
        assert rows[0]["unread_count"] == 2
        assert rows[0]["role"] == "member"

    def test_get_requires_participation(self, client, group):
        cid = group["conversation_id"]
        assert client.get(f"/conversations/{cid}", headers=as_user("bob")).status_code == 200

        response = client.get(f"/conversations/{cid}", headers=as_user("mallory"))
        assert response.status_code == 404
        assert response.json() == {
            "kind": "NotMember",
            "detail": f"User mallory is not a participant of conversation {cid}",
        }

    def test_get_missing(self, client):
        response = client.get("/conversations/missing", headers=as_user("alice"))
        assert response.status_code == 404
        assert response.json()["kind"] == "NotFound"

    def test_rename(self, client, group):
        cid = group["conversation_id"]
        response = client.patch(
            f"/conversations/{cid}", json={"name": "Stage Crew"}, headers=as_user("alice")
        )
        assert response.status_code == 200
        assert response.json()["name"] == "Stage Crew"

    def test_rename_by_member_denied(self, client, group):
        cid = group["conversation_id"]
        response = client.patch(
            f"/conversations/{cid}", json={"name": "Mine"}, headers=as_user("bob")
        )
        assert response.status_code == 403
        assert response.json()["kind"] == "PermissionDenied"

    def test_mute(self, client, group):
        cid = group["conversation_id"]
        response = client.patch(
            f"/conversations/{cid}", json={"is_muted": True}, headers=as_user("bob")
        )
        assert response.status_code == 200
        bob = [p for p in response.json()["participants"] if p["user_id"] == "bob"][0]
        assert bob["is_muted"] is True

    def test_empty_patch(self, client, group):
        response = client.patch(
            f"/conversations/{group['conversation_id']}", json={}, headers=as_user("alice")
        )
        assert response.status_code == 400

    def test_leave(self, client, group):
        cid = group["conversation_id"]
        response = client.delete(f"/conversations/{cid}", headers=as_user("bob"))
        assert response.status_code == 200
        assert response.json()["left_at"] is not None

    def test_last_admin_cannot_leave(self, client, group):
        cid = group["conversation_id"]
        response = client.delete(f"/conversations/{cid}", headers=as_user("alice"))
        assert response.status_code == 409
        assert response.json()["kind"] == "LastAdminViolation"

    def test_leave_direct_invalid(self, client, direct):
        response = client.delete(
            f"/conversations/{direct['conversation_id']}", headers=as_user("alice")
        )
        assert response.status_code == 400


class TestParticipants:
    def test_add(self, client, group):
        cid = group["conversation_id"]
        response = client.post(
            f"/conversations/{cid}/participants",
            json={"user_id": "dave"},
            headers=as_user("alice"),
        )
        assert response.status_code == 201
        assert response.json()["user_id"] == "dave"
        assert response.json()["last_read_at"] is None

    def test_add_by_member_denied(self, client, group):
        cid = group["conversation_id"]
        response = client.post(
            f"/conversations/{cid}/participants",
            json={"user_id": "dave"},
            headers=as_user("bob"),
        )
        assert response.status_code == 403

        listed = client.get(f"/conversations/{cid}/participants", headers=as_user("alice"))
        assert "dave" not in [p["user_id"] for p in listed.json()]

    def test_add_existing(self, client, group):
        response = client.post(
            f"/conversations/{group['conversation_id']}/participants",
            json={"user_id": "bob"},
            headers=as_user("alice"),
        )
        assert response.status_code == 409
        assert response.json()["kind"] == "AlreadyMember"

    def test_add_to_direct(self, client, direct):
        response = client.post(
            f"/conversations/{direct['conversation_id']}/participants",
            json={"user_id": "carol"},
            headers=as_user("alice"),
        )
        assert response.status_code == 400
        assert response.json()["kind"] == "InvalidOperation"

    def test_add_requires_user_id(self, client, group):
        response = client.post(
            f"/conversations/{group['conversation_id']}/participants",
            json={},
            headers=as_user("alice"),
        )
        assert response.status_code == 422

    def test_remove_then_remove_again(self, client, group):
        cid = group["conversation_id"]
        first = client.delete(f"/conversations/{cid}/participants/bob", headers=as_user("alice"))
        assert first.status_code == 200
        assert first.json()["left_at"] is not None

        again = client.delete(f"/conversations/{cid}/participants/bob", headers=as_user("alice"))
        assert again.status_code == 404
        assert again.json()["kind"] == "NotMember"

    def test_list_include_left(self, client, group):
        cid = group["conversation_id"]
        client.delete(f"/conversations/{cid}/participants/bob", headers=as_user("alice"))

        active = client.get(f"/conversations/{cid}/participants", headers=as_user("alice"))
        everyone = client.get(
            f"/conversations/{cid}/participants",
            params={"include_left": "true"},
            headers=as_user("alice"),
        )
        assert len(active.json()) == 2
        assert len(everyone.json()) == 3


class TestReadState:
    def test_mark_as_read_clears_unread(self, client, group):
        cid = group["conversation_id"]
        post_message(client, cid, "alice", count=3)

        assert client.get("/conversations/unread-count", headers=as_user("bob")).json() == {
            "count": 3
        }

        response = client.post(f"/conversations/{cid}/read", headers=as_user("bob"))
        assert response.status_code == 200
        assert response.json()["last_read_at"] is not None

        assert client.get("/conversations/unread-count", headers=as_user("bob")).json() == {
            "count": 0
        }

    def test_mark_as_read_after_leaving(self, client, group):
        cid = group["conversation_id"]
        client.delete(f"/conversations/{cid}", headers=as_user("bob"))

        response = client.post(f"/conversations/{cid}/read", headers=as_user("bob"))
        assert response.status_code == 404
        assert response.json()["kind"] == "NotMember"

    def test_unread_count_for_stranger(self, client):
        response = client.get("/conversations/unread-count", headers=as_user("nobody"))
        assert response.status_code == 200
        assert response.json() == {"count": 0}

    def test_unread_count_without_identity(self, client, group):
        post_message(client, group["conversation_id"], "alice", count=2)

        response = client.get("/conversations/unread-count")
        assert response.status_code == 200
        assert response.json() == {"count": 0}


class TestUnavailable:
    def test_store_failure_maps_to_503(self, client, group, monkeypatch):
        store = client.app.state.store

        async def broken_call(fn, *args, timeout=None):
            raise Unavailable("Store call get_conversation timed out")

        monkeypatch.setattr(store, "call", broken_call)

        response = client.get(
            f"/conversations/{group['conversation_id']}", headers=as_user("alice")
        )
        assert response.status_code == 503
        assert response.json()["kind"] == "Unavailable"
        assert response.headers["Retry-After"] == "1"

    def test_unread_failures_counted(self, client, group, monkeypatch):
        store = client.app.state.store
        post_message(client, group["conversation_id"], "alice", count=2)

        def broken_count(conversation_id, user_id, since):
            raise RuntimeError("count query failed")

        monkeypatch.setattr(store, "count_unread", broken_count)

        response = client.get("/conversations/unread-count", headers=as_user("bob"))
        assert response.json() == {"count": 0}
        assert metrics.count("unread.conversation_failures") == 1
