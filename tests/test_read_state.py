"""Tests for read cursors."""

from datetime import timedelta

import pytest

from stagedoor.errors import NotMember
from stagedoor.membership import leave_conversation
from stagedoor.read_state import mark_as_read


class TestMarkAsRead:
    @pytest.mark.asyncio
    async def test_sets_cursor(self, group_conversation, stagedoor_clock):
        store, created = group_conversation
        cid = created.conversation.conversation_id
        expected = stagedoor_clock.current

        participant = await mark_as_read(store, cid, "bob")

        assert participant.last_read_at == expected
        assert store.get_active_participant(cid, "bob").last_read_at == expected

    @pytest.mark.asyncio
    async def test_cursor_moves_forward(self, group_conversation):
        store, created = group_conversation
        cid = created.conversation.conversation_id

        first = await mark_as_read(store, cid, "bob")
        second = await mark_as_read(store, cid, "bob")

        assert second.last_read_at >= first.last_read_at

    @pytest.mark.asyncio
    async def test_cursor_never_regresses_when_clock_goes_back(
        self, group_conversation, stagedoor_clock
    ):
        store, created = group_conversation
        cid = created.conversation.conversation_id

        first = await mark_as_read(store, cid, "bob")
        stagedoor_clock.rewind(timedelta(hours=1))
        second = await mark_as_read(store, cid, "bob")

        assert second.last_read_at == first.last_read_at

    @pytest.mark.asyncio
    async def test_only_own_cursor_changes(self, group_conversation):
        store, created = group_conversation
        cid = created.conversation.conversation_id

        await mark_as_read(store, cid, "bob")

        assert store.get_active_participant(cid, "carol").last_read_at is None

    @pytest.mark.asyncio
    async def test_outsider_is_not_member(self, group_conversation):
        store, created = group_conversation
        with pytest.raises(NotMember):
            await mark_as_read(store, created.conversation.conversation_id, "mallory")

    @pytest.mark.asyncio
    async def test_after_leaving_is_not_member(self, group_conversation):
        store, created = group_conversation
        cid = created.conversation.conversation_id
        await leave_conversation(store, cid, "bob")

        with pytest.raises(NotMember):
            await mark_as_read(store, cid, "bob")

    @pytest.mark.asyncio
    async def test_unknown_conversation_is_not_member(self, stagedoor_store):
        with pytest.raises(NotMember):
            await mark_as_read(stagedoor_store, "missing", "bob")
