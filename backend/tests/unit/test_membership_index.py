import logging

import pytest

from ally.domain.realtime.exceptions import TransientStoreError
from ally.domain.realtime.membership import RoomMembershipIndex
from ally.domain.realtime.models import MessageDraft, Room


@pytest.mark.asyncio
async def test_hydrate_collects_groups_conversations_and_personal_room(store):
	await store.create_message(MessageDraft(sender_id="dave", recipient_id="alice", content="hi"))
	index = RoomMembershipIndex(store)

	rooms = await index.hydrate("alice")

	assert rooms == {Room.personal("alice"), Room.group("g1"), Room.conversation("alice", "dave")}
	assert "alice" in index.members_of(Room.group("g1"))
	assert index.rooms_of("alice") == rooms


@pytest.mark.asyncio
async def test_leave_updates_both_directions(store):
	index = RoomMembershipIndex(store)
	await index.hydrate("alice")
	await index.hydrate("bob")
	room = Room.group("g1")

	assert index.leave("bob", room) is True
	assert "bob" not in index.members_of(room)
	assert room not in index.rooms_of("bob")
	assert index.leave("bob", room) is False
	assert index.peers_of("alice") == set()


def test_join_is_idempotent(store):
	index = RoomMembershipIndex(store)
	room = Room.conversation("alice", "bob")

	assert index.join("alice", room) is True
	assert index.join("alice", room) is False
	assert index.members_of(room) == frozenset({"alice"})


@pytest.mark.asyncio
async def test_hydrate_drops_group_removed_from_store(store):
	index = RoomMembershipIndex(store)
	await index.hydrate("bob")
	assert Room.group("g1") in index.rooms_of("bob")

	await store.remove_group_member("g1", "bob")
	rooms = await index.hydrate("bob")

	assert Room.group("g1") not in rooms
	assert "bob" not in index.members_of(Room.group("g1"))


class FailingStore:
	async def find_groups_by_member(self, user_id):
		raise TransientStoreError()

	async def find_conversation_partners(self, user_id):
		return set()


@pytest.mark.asyncio
async def test_hydrate_failure_falls_back_to_personal_room(caplog):
	index = RoomMembershipIndex(FailingStore())

	with caplog.at_level(logging.WARNING, logger="ally.domain.realtime.membership"):
		rooms = await index.hydrate("alice")

	assert rooms == {Room.personal("alice")}
	assert any("hydration failed" in record.getMessage() for record in caplog.records)
