from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Iterator

import asyncpg
import pytest
import pytest_asyncio

from ally.domain.realtime.models import GroupRole, MessageDraft
from ally.domain.realtime.repo import DELETED_CONTENT, PostgresDurableStore
from ally.infra import postgres

pytestmark = pytest.mark.asyncio


@pytest.fixture(scope="module")
def postgres_container() -> Iterator["PostgresContainer"]:
	testcontainers = pytest.importorskip(
		"testcontainers.postgres",
		reason="testcontainers.postgres is required for integration tests",
	)
	PostgresContainer = testcontainers.PostgresContainer
	container = PostgresContainer("postgres:16-alpine")
	try:
		container.start()
	except Exception as exc:  # pragma: no cover - environment without docker
		pytest.skip(f"unable to start postgres container: {exc}")
	try:
		yield container
	finally:
		container.stop()


async def _reset_schema(pool: asyncpg.Pool) -> None:
	async with pool.acquire() as conn:
		await conn.execute("DROP SCHEMA IF EXISTS public CASCADE")
		await conn.execute("CREATE SCHEMA public")
		await conn.execute("GRANT ALL ON SCHEMA public TO PUBLIC")


async def _seed(pool: asyncpg.Pool) -> None:
	async with pool.acquire() as conn:
		await conn.executemany(
			"INSERT INTO users (id, name, status) VALUES ($1, $2, $3)",
			[("alice", "Alice", "active"), ("bob", "Bob", "active"), ("carol", "Carol", "suspended")],
		)
		await conn.executemany(
			"INSERT INTO groups (id, name, is_active) VALUES ($1, $2, $3)",
			[("g1", "Algorithms", True), ("g2", "Archived", False)],
		)
		await conn.executemany(
			"INSERT INTO group_members (group_id, user_id, role, is_active) VALUES ($1, $2, $3, $4)",
			[
				("g1", "alice", "owner", True),
				("g1", "bob", "member", True),
				("g1", "carol", "member", False),
				("g2", "alice", "owner", True),
			],
		)


@pytest_asyncio.fixture(scope="function")
async def store(postgres_container) -> AsyncIterator[PostgresDurableStore]:
	url = postgres_container.get_connection_url().replace("postgresql+psycopg2", "postgresql")
	pool = await asyncpg.create_pool(dsn=url, min_size=1, max_size=4)
	await _reset_schema(pool)
	postgres.set_pool(pool)
	store = PostgresDurableStore(pool)
	await store.ensure_schema()
	# applying the schema twice must be harmless
	await store.ensure_schema()
	await _seed(pool)
	try:
		yield store
	finally:
		postgres.set_pool(None)
		await pool.close()


@pytest.mark.integration
async def test_users_groups_and_memberships(store):
	user = await store.get_user("carol")
	assert user is not None and user.status.value == "suspended"
	assert await store.get_user("nobody") is None

	group = await store.get_group("g1")
	assert group is not None
	assert group.member("alice").role is GroupRole.OWNER
	assert group.member("carol") is None

	assert [ref.id for ref in await store.find_groups_by_member("alice")] == ["g1"]
	assert await store.find_groups_by_member("carol") == []

	assert await store.add_group_member("g1", "carol") is True
	assert await store.add_group_member("g1", "carol") is False
	assert await store.remove_group_member("g1", "bob") is True
	assert await store.remove_group_member("g1", "bob") is False
	assert {ref.id for ref in await store.find_groups_by_member("carol")} == {"g1"}


@pytest.mark.integration
async def test_presence_write_keeps_status_when_not_given(store):
	seen = datetime.now(timezone.utc)
	await store.update_presence("alice", online=True, last_seen=seen, status="away")
	await store.update_presence("alice", online=False, last_seen=seen + timedelta(seconds=5))

	user = await store.get_user("alice")
	assert user.is_online is False
	assert user.presence_status == "away"
	assert user.last_seen == seen + timedelta(seconds=5)


@pytest.mark.integration
async def test_conversation_partners_and_receipts(store):
	first = await store.create_message(MessageDraft(sender_id="bob", recipient_id="alice", content="q1"))
	second = await store.create_message(MessageDraft(sender_id="bob", recipient_id="alice", content="q2"))
	await store.create_message(MessageDraft(sender_id="alice", group_id="g1", content="group"))

	assert await store.find_conversation_partners("alice") == {"bob"}
	assert await store.find_conversation_partners("bob") == {"alice"}

	at = datetime.now(timezone.utc)
	delivered = await store.update_delivery_markers(first.message_id, ["alice"], at)
	assert delivered.is_delivered_to("alice")
	assert not delivered.is_read_by("alice")
	assert await store.update_delivery_markers("missing", ["alice"], at) is None

	read = await store.mark_read(first.message_id, "alice", at + timedelta(seconds=1))
	assert read.is_read_by("alice")
	assert read.delivered_to["alice"] == at

	assert await store.mark_conversation_read("alice:bob", "alice", at + timedelta(seconds=2)) == 1
	assert (await store.get_message(second.message_id)).is_read_by("alice")
	assert await store.mark_conversation_read("alice:bob", "alice", at + timedelta(seconds=3)) == 0


@pytest.mark.integration
async def test_edit_delete_and_reactions(store):
	message = await store.create_message(MessageDraft(sender_id="alice", group_id="g1", content="draft"))
	at = datetime.now(timezone.utc)

	edited = await store.edit_message(message.message_id, "final", at)
	assert edited.content == "final"
	assert edited.edited_at == at

	assert await store.add_reaction(message.message_id, "bob", "👍", at) is True
	assert await store.add_reaction(message.message_id, "bob", "👍", at) is False
	assert await store.add_reaction(message.message_id, "alice", "👍", at + timedelta(seconds=1)) is True
	assert (await store.get_message(message.message_id)).reactions == {"👍": ("bob", "alice")}
	assert await store.remove_reaction(message.message_id, "bob", "👍") is True
	assert await store.remove_reaction(message.message_id, "bob", "👍") is False

	deleted = await store.delete_message(message.message_id, at)
	assert deleted.is_deleted
	assert deleted.content == DELETED_CONTENT
	assert deleted.reactions == {}
	assert await store.delete_message(message.message_id, at) is None
	assert await store.edit_message(message.message_id, "again", at) is None
	assert await store.add_reaction(message.message_id, "bob", "🔥", at) is False
