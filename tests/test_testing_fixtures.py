"""Tests for the stagedoor.testing pytest plugin."""

from datetime import timedelta

from stagedoor.store import SqliteStore
from stagedoor.testing import TickingClock, post_messages


def test_store_fixture(stagedoor_store):
    assert isinstance(stagedoor_store, SqliteStore)
    assert stagedoor_store.get_info().location == ":memory:"


def test_group_fixture(group_conversation):
    store, created = group_conversation
    roles = {p.user_id: p.role for p in created.participants}

    assert created.conversation.name == "Crew"
    assert roles == {"alice": "admin", "bob": "member", "carol": "member"}
    assert store.get_conversation(created.conversation.conversation_id) is not None


def test_direct_fixture(direct_conversation):
    _, created = direct_conversation
    assert created.conversation.is_direct()
    assert len(created.participants) == 2


def test_post_messages(group_conversation):
    store, created = group_conversation
    cid = created.conversation.conversation_id

    messages = post_messages(store, cid, "alice", count=3)

    assert [m.body for m in messages] == ["Message 1", "Message 2", "Message 3"]
    assert messages[0].created_at < messages[1].created_at < messages[2].created_at


def test_ticking_clock():
    clock = TickingClock(step=timedelta(seconds=1))
    first = clock()
    second = clock()
    assert second - first == timedelta(seconds=1)

    clock.rewind(timedelta(minutes=1))
    assert clock() < first


def test_http_fixture(stagedoor_http):
    assert stagedoor_http.get("/health").status_code == 200
