"""Tests for the HTTP client against the in-process app."""

import httpx
import pytest

from stagedoor.client import Stagedoor
from stagedoor.errors import (
    AlreadyMember,
    InvalidOperation,
    LastAdminViolation,
    NotMember,
    PermissionDenied,
)


@pytest.fixture
def alice(stagedoor_http):
    return Stagedoor(user_id="alice", http_client=stagedoor_http)


@pytest.fixture
def crew(alice):
    return alice.create_conversation(["bob", "carol"], name="Crew")


class TestClientFlow:
    def test_create_and_get(self, alice, crew):
        fetched = alice.get_conversation(crew["conversation_id"])

        assert fetched["name"] == "Crew"
        assert {p["user_id"] for p in fetched["participants"]} == {"alice", "bob", "carol"}

    def test_as_user_shares_connection(self, alice, crew):
        bob = alice.as_user("bob")

        assert bob.user_id == "bob"
        assert bob.list_conversations()[0]["conversation_id"] == crew["conversation_id"]

    def test_direct_dedup(self, alice):
        first = alice.create_conversation(["bob"], kind="direct")
        second = alice.as_user("bob").create_conversation(["alice"], kind="direct")

        assert first["created"] is True
        assert second["created"] is False
        assert second["conversation_id"] == first["conversation_id"]

    def test_membership_changes(self, alice, crew):
        cid = crew["conversation_id"]

        alice.add_participant(cid, "dave")
        alice.remove_participant(cid, "carol")

        ids = [p["user_id"] for p in alice.list_participants(cid)]
        assert sorted(ids) == ["alice", "bob", "dave"]
        assert len(alice.list_participants(cid, include_left=True)) == 4

    def test_rename_and_mute(self, alice, crew):
        cid = crew["conversation_id"]

        assert alice.rename_conversation(cid, "Stage Crew")["name"] == "Stage Crew"
        detail = alice.as_user("bob").set_muted(cid, True)
        assert [p["is_muted"] for p in detail["participants"] if p["user_id"] == "bob"] == [True]

    def test_read_and_unread(self, alice, crew, stagedoor_http):
        cid = crew["conversation_id"]
        stagedoor_http.app.state.store.insert_message(cid, "alice", "hello")
        bob = alice.as_user("bob")

        assert bob.get_unread_count() == 1
        assert bob.mark_as_read(cid)["last_read_at"] is not None
        assert bob.get_unread_count() == 0

    def test_health(self, alice):
        assert alice.health()["status"] == "ok"


class TestClientErrors:
    def test_errors_come_back_typed(self, alice, crew):
        cid = crew["conversation_id"]
        bob = alice.as_user("bob")

        with pytest.raises(PermissionDenied):
            bob.add_participant(cid, "dave")
        with pytest.raises(AlreadyMember):
            alice.add_participant(cid, "bob")
        with pytest.raises(LastAdminViolation):
            alice.leave_conversation(cid)

        bob.leave_conversation(cid)
        with pytest.raises(NotMember):
            bob.mark_as_read(cid)

    def test_direct_membership_invalid(self, alice):
        direct = alice.create_conversation(["bob"], kind="direct")
        with pytest.raises(InvalidOperation):
            alice.add_participant(direct["conversation_id"], "carol")

    def test_untyped_error_is_runtime_error(self, stagedoor_http):
        anonymous = Stagedoor(http_client=stagedoor_http)
        with pytest.raises(RuntimeError, match="401"):
            anonymous.list_conversations()

    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            Stagedoor(user_id="alice")

    def test_remote_url_joining(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == "http://stagedoor.test/conversations/unread-count"
            assert request.headers["X-User-Id"] == "alice"
            assert request.headers["Authorization"] == "Bearer tok"
            return httpx.Response(200, json={"count": 7})

        http = httpx.Client(transport=httpx.MockTransport(handler))
        client = Stagedoor("http://stagedoor.test/", "alice", "tok", http_client=http)

        assert client.get_unread_count() == 7
