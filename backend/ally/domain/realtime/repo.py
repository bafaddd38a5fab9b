"""Durable store access for users, groups and messages.

The realtime layer owns no caching of its own: it reads memberships and writes
presence and receipt markers through ``DurableStore``. ``InMemoryDurableStore``
serves dev and tests, ``PostgresDurableStore`` is the asyncpg-backed store.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, replace
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Iterable, List, Optional, Protocol

import asyncpg
import ulid

from ally.infra import postgres

from .exceptions import TransientStoreError
from .models import (
	AccountStatus,
	AttachmentMeta,
	GroupMember,
	GroupRecord,
	GroupRef,
	GroupRole,
	MessageDraft,
	MessageRecord,
	UserRecord,
)

logger = logging.getLogger(__name__)

DELETED_CONTENT = "[Message deleted]"


class DurableStore(Protocol):
	async def get_user(self, user_id: str) -> Optional[UserRecord]:
		...

	async def get_group(self, group_id: str) -> Optional[GroupRecord]:
		...

	async def find_groups_by_member(self, user_id: str) -> List[GroupRef]:
		...

	async def find_conversation_partners(self, user_id: str) -> set[str]:
		...

	async def update_presence(
		self,
		user_id: str,
		*,
		online: bool,
		last_seen: datetime,
		status: Optional[str] = None,
	) -> None:
		...

	async def create_message(self, draft: MessageDraft) -> MessageRecord:
		...

	async def get_message(self, message_id: str) -> Optional[MessageRecord]:
		...

	async def update_delivery_markers(
		self, message_id: str, user_ids: Iterable[str], delivered_at: datetime
	) -> Optional[MessageRecord]:
		...

	async def mark_read(self, message_id: str, user_id: str, read_at: datetime) -> Optional[MessageRecord]:
		...

	async def mark_conversation_read(self, conversation_id: str, user_id: str, read_at: datetime) -> int:
		...

	async def edit_message(self, message_id: str, content: str, edited_at: datetime) -> Optional[MessageRecord]:
		...

	async def delete_message(self, message_id: str, deleted_at: datetime) -> Optional[MessageRecord]:
		...

	async def add_reaction(self, message_id: str, user_id: str, emoji: str, added_at: datetime) -> bool:
		...

	async def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> bool:
		...

	async def add_group_member(self, group_id: str, user_id: str, role: GroupRole = GroupRole.MEMBER) -> bool:
		...

	async def remove_group_member(self, group_id: str, user_id: str) -> bool:
		...


def _now() -> datetime:
	return datetime.now(timezone.utc)


def _copy_message(message: MessageRecord) -> MessageRecord:
	return replace(
		message,
		delivered_to=dict(message.delivered_to),
		read_by=dict(message.read_by),
		reactions=dict(message.reactions),
	)


def _copy_group(group: GroupRecord) -> GroupRecord:
	return replace(group, members=[replace(member) for member in group.members])


class InMemoryDurableStore:
	"""Process-local store used in development and tests."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._users: Dict[str, UserRecord] = {}
		self._groups: Dict[str, GroupRecord] = {}
		self._messages: Dict[str, MessageRecord] = {}

	# Seeding helpers (synchronous, used before the loop serves traffic)
	def add_user(self, user: UserRecord) -> UserRecord:
		self._users[user.id] = user
		return user

	def add_group(self, group: GroupRecord) -> GroupRecord:
		self._groups[group.id] = group
		return group

	def user(self, user_id: str) -> Optional[UserRecord]:
		return self._users.get(str(user_id))

	def messages(self) -> List[MessageRecord]:
		return list(self._messages.values())

	async def get_user(self, user_id: str) -> Optional[UserRecord]:
		async with self._lock:
			user = self._users.get(str(user_id))
			return replace(user) if user else None

	async def get_group(self, group_id: str) -> Optional[GroupRecord]:
		async with self._lock:
			group = self._groups.get(str(group_id))
			return _copy_group(group) if group else None

	async def find_groups_by_member(self, user_id: str) -> List[GroupRef]:
		async with self._lock:
			return [
				GroupRef(id=group.id, name=group.name)
				for group in self._groups.values()
				if group.is_active and group.member(user_id) is not None
			]

	async def find_conversation_partners(self, user_id: str) -> set[str]:
		user_id = str(user_id)
		async with self._lock:
			partners: set[str] = set()
			for message in self._messages.values():
				if message.group_id is not None or not message.recipient_id or not message.sender_id:
					continue
				if message.sender_id == user_id:
					partners.add(message.recipient_id)
				elif message.recipient_id == user_id:
					partners.add(message.sender_id)
			partners.discard(user_id)
			return partners

	async def update_presence(
		self,
		user_id: str,
		*,
		online: bool,
		last_seen: datetime,
		status: Optional[str] = None,
	) -> None:
		async with self._lock:
			user = self._users.get(str(user_id))
			if user is None:
				return
			user.is_online = online
			user.last_seen = last_seen
			if status is not None:
				user.presence_status = status

	async def create_message(self, draft: MessageDraft) -> MessageRecord:
		async with self._lock:
			message = MessageRecord(
				message_id=str(ulid.new()),
				sender_id=draft.sender_id,
				content=draft.content,
				created_at=_now(),
				content_type=draft.content_type,
				recipient_id=draft.recipient_id,
				group_id=draft.group_id,
				conversation_id=draft.conversation_id,
				attachments=tuple(draft.attachments),
			)
			self._messages[message.message_id] = message
			return _copy_message(message)

	async def get_message(self, message_id: str) -> Optional[MessageRecord]:
		async with self._lock:
			message = self._messages.get(str(message_id))
			return _copy_message(message) if message else None

	async def update_delivery_markers(
		self, message_id: str, user_ids: Iterable[str], delivered_at: datetime
	) -> Optional[MessageRecord]:
		async with self._lock:
			message = self._messages.get(str(message_id))
			if message is None:
				return None
			for user_id in user_ids:
				message.delivered_to.setdefault(str(user_id), delivered_at)
			return _copy_message(message)

	async def mark_read(self, message_id: str, user_id: str, read_at: datetime) -> Optional[MessageRecord]:
		async with self._lock:
			message = self._messages.get(str(message_id))
			if message is None:
				return None
			message.delivered_to.setdefault(str(user_id), read_at)
			message.read_by.setdefault(str(user_id), read_at)
			return _copy_message(message)

	async def mark_conversation_read(self, conversation_id: str, user_id: str, read_at: datetime) -> int:
		user_id = str(user_id)
		updated = 0
		async with self._lock:
			for message in self._messages.values():
				if message.conversation_id != conversation_id or message.recipient_id != user_id:
					continue
				if user_id in message.read_by:
					continue
				message.delivered_to.setdefault(user_id, read_at)
				message.read_by[user_id] = read_at
				updated += 1
		return updated

	async def edit_message(self, message_id: str, content: str, edited_at: datetime) -> Optional[MessageRecord]:
		async with self._lock:
			message = self._messages.get(str(message_id))
			if message is None or message.is_deleted:
				return None
			message.content = content
			message.edited_at = edited_at
			return _copy_message(message)

	async def delete_message(self, message_id: str, deleted_at: datetime) -> Optional[MessageRecord]:
		async with self._lock:
			message = self._messages.get(str(message_id))
			if message is None or message.is_deleted:
				return None
			message.content = DELETED_CONTENT
			message.attachments = ()
			message.reactions = {}
			message.deleted_at = deleted_at
			return _copy_message(message)

	async def add_reaction(self, message_id: str, user_id: str, emoji: str, added_at: datetime) -> bool:
		async with self._lock:
			message = self._messages.get(str(message_id))
			if message is None or message.is_deleted or message.has_reaction(user_id, emoji):
				return False
			message.reactions[emoji] = message.reactions.get(emoji, ()) + (str(user_id),)
			return True

	async def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> bool:
		async with self._lock:
			message = self._messages.get(str(message_id))
			if message is None or not message.has_reaction(user_id, emoji):
				return False
			remaining = tuple(uid for uid in message.reactions[emoji] if uid != str(user_id))
			if remaining:
				message.reactions[emoji] = remaining
			else:
				del message.reactions[emoji]
			return True

	async def add_group_member(self, group_id: str, user_id: str, role: GroupRole = GroupRole.MEMBER) -> bool:
		async with self._lock:
			group = self._groups.get(str(group_id))
			if group is None:
				return False
			for member in group.members:
				if member.user_id == str(user_id):
					if member.is_active:
						return False
					member.is_active = True
					member.role = role
					return True
			group.members.append(GroupMember(user_id=str(user_id), role=role))
			return True

	async def remove_group_member(self, group_id: str, user_id: str) -> bool:
		async with self._lock:
			group = self._groups.get(str(group_id))
			if group is None:
				return False
			before = len(group.members)
			group.members = [member for member in group.members if member.user_id != str(user_id)]
			return len(group.members) != before


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
	id TEXT PRIMARY KEY,
	name TEXT NOT NULL,
	picture TEXT,
	university TEXT,
	status TEXT NOT NULL DEFAULT 'active',
	is_online BOOLEAN NOT NULL DEFAULT FALSE,
	presence_status TEXT,
	last_seen TIMESTAMPTZ
);
CREATE TABLE IF NOT EXISTS groups (
	id TEXT PRIMARY KEY,
	name TEXT NOT NULL,
	is_active BOOLEAN NOT NULL DEFAULT TRUE
);
CREATE TABLE IF NOT EXISTS group_members (
	group_id TEXT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
	user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
	role TEXT NOT NULL DEFAULT 'member',
	is_active BOOLEAN NOT NULL DEFAULT TRUE,
	PRIMARY KEY (group_id, user_id)
);
CREATE TABLE IF NOT EXISTS messages (
	message_id TEXT PRIMARY KEY,
	sender_id TEXT REFERENCES users(id),
	recipient_id TEXT REFERENCES users(id),
	group_id TEXT REFERENCES groups(id),
	conversation_id TEXT,
	content TEXT NOT NULL,
	content_type TEXT NOT NULL DEFAULT 'text',
	attachments JSONB NOT NULL DEFAULT '[]'::jsonb,
	created_at TIMESTAMPTZ NOT NULL,
	CHECK ((recipient_id IS NULL) <> (group_id IS NULL))
);
CREATE INDEX IF NOT EXISTS messages_conversation_idx ON messages (conversation_id, created_at);
CREATE TABLE IF NOT EXISTS message_receipts (
	message_id TEXT NOT NULL REFERENCES messages(message_id) ON DELETE CASCADE,
	user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
	delivered_at TIMESTAMPTZ,
	read_at TIMESTAMPTZ,
	PRIMARY KEY (message_id, user_id)
);
ALTER TABLE messages ADD COLUMN IF NOT EXISTS edited_at TIMESTAMPTZ;
ALTER TABLE messages ADD COLUMN IF NOT EXISTS deleted_at TIMESTAMPTZ;
CREATE TABLE IF NOT EXISTS message_reactions (
	message_id TEXT NOT NULL REFERENCES messages(message_id) ON DELETE CASCADE,
	user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
	emoji TEXT NOT NULL,
	added_at TIMESTAMPTZ NOT NULL,
	PRIMARY KEY (message_id, user_id, emoji)
);
"""

_MESSAGE_COLUMNS = """
	m.message_id, m.sender_id, m.recipient_id, m.group_id, m.conversation_id,
	m.content, m.content_type, m.attachments, m.created_at, m.edited_at, m.deleted_at
"""


class PostgresDurableStore:
	"""Store backed by the shared asyncpg pool."""

	def __init__(self, pool: Optional[asyncpg.pool.Pool] = None) -> None:
		self._pool = pool

	@asynccontextmanager
	async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
		try:
			pool = self._pool or await postgres.get_pool()
			async with pool.acquire() as conn:
				yield conn
		except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
			logger.warning("durable store call failed: %s", exc)
			raise TransientStoreError() from exc

	async def ensure_schema(self) -> None:
		async with self._connection() as conn:
			await conn.execute(SCHEMA_SQL)

	async def get_user(self, user_id: str) -> Optional[UserRecord]:
		async with self._connection() as conn:
			row = await conn.fetchrow(
				"""
				SELECT id, name, picture, university, status, is_online, presence_status, last_seen
				FROM users WHERE id = $1
				""",
				str(user_id),
			)
		if not row:
			return None
		return UserRecord(
			id=str(row["id"]),
			name=row["name"],
			picture=row["picture"],
			university=row["university"],
			status=AccountStatus(row["status"]),
			is_online=bool(row["is_online"]),
			presence_status=row["presence_status"],
			last_seen=row["last_seen"],
		)

	async def get_group(self, group_id: str) -> Optional[GroupRecord]:
		async with self._connection() as conn:
			group = await conn.fetchrow("SELECT id, name, is_active FROM groups WHERE id = $1", str(group_id))
			if not group:
				return None
			rows = await conn.fetch(
				"SELECT user_id, role, is_active FROM group_members WHERE group_id = $1",
				str(group_id),
			)
		return GroupRecord(
			id=str(group["id"]),
			name=group["name"],
			is_active=bool(group["is_active"]),
			members=[
				GroupMember(user_id=str(row["user_id"]), role=GroupRole(row["role"]), is_active=bool(row["is_active"]))
				for row in rows
			],
		)

	async def find_groups_by_member(self, user_id: str) -> List[GroupRef]:
		async with self._connection() as conn:
			rows = await conn.fetch(
				"""
				SELECT g.id, g.name
				FROM groups g
				JOIN group_members gm ON gm.group_id = g.id
				WHERE gm.user_id = $1 AND gm.is_active AND g.is_active
				""",
				str(user_id),
			)
		return [GroupRef(id=str(row["id"]), name=row["name"]) for row in rows]

	async def find_conversation_partners(self, user_id: str) -> set[str]:
		async with self._connection() as conn:
			rows = await conn.fetch(
				"""
				SELECT DISTINCT CASE WHEN sender_id = $1 THEN recipient_id ELSE sender_id END AS partner_id
				FROM messages
				WHERE group_id IS NULL AND (sender_id = $1 OR recipient_id = $1)
				""",
				str(user_id),
			)
		return {str(row["partner_id"]) for row in rows if row["partner_id"] and str(row["partner_id"]) != str(user_id)}

	async def update_presence(
		self,
		user_id: str,
		*,
		online: bool,
		last_seen: datetime,
		status: Optional[str] = None,
	) -> None:
		async with self._connection() as conn:
			await conn.execute(
				"""
				UPDATE users
				SET is_online = $2, last_seen = $3, presence_status = COALESCE($4, presence_status)
				WHERE id = $1
				""",
				str(user_id),
				online,
				last_seen,
				status,
			)

	async def create_message(self, draft: MessageDraft) -> MessageRecord:
		message_id = str(ulid.new())
		created_at = _now()
		attachments_json = json.dumps([asdict(meta) for meta in draft.attachments])
		async with self._connection() as conn:
			await conn.execute(
				"""
				INSERT INTO messages (
					message_id, sender_id, recipient_id, group_id, conversation_id,
					content, content_type, attachments, created_at
				) VALUES ($1,$2,$3,$4,$5,$6,$7,$8::jsonb,$9)
				""",
				message_id,
				draft.sender_id,
				draft.recipient_id,
				draft.group_id,
				draft.conversation_id,
				draft.content,
				draft.content_type,
				attachments_json,
				created_at,
			)
		return MessageRecord(
			message_id=message_id,
			sender_id=draft.sender_id,
			content=draft.content,
			created_at=created_at,
			content_type=draft.content_type,
			recipient_id=draft.recipient_id,
			group_id=draft.group_id,
			conversation_id=draft.conversation_id,
			attachments=tuple(draft.attachments),
		)

	async def get_message(self, message_id: str) -> Optional[MessageRecord]:
		async with self._connection() as conn:
			return await self._fetch_message(conn, str(message_id))

	async def update_delivery_markers(
		self, message_id: str, user_ids: Iterable[str], delivered_at: datetime
	) -> Optional[MessageRecord]:
		targets = [str(user_id) for user_id in user_ids]
		async with self._connection() as conn:
			async with conn.transaction():
				exists = await conn.fetchval("SELECT 1 FROM messages WHERE message_id = $1", str(message_id))
				if not exists:
					return None
				if targets:
					await conn.executemany(
						"""
						INSERT INTO message_receipts (message_id, user_id, delivered_at)
						VALUES ($1, $2, $3)
						ON CONFLICT (message_id, user_id)
						DO UPDATE SET delivered_at = COALESCE(message_receipts.delivered_at, EXCLUDED.delivered_at)
						""",
						[(str(message_id), user_id, delivered_at) for user_id in targets],
					)
				return await self._fetch_message(conn, str(message_id))

	async def mark_read(self, message_id: str, user_id: str, read_at: datetime) -> Optional[MessageRecord]:
		async with self._connection() as conn:
			async with conn.transaction():
				exists = await conn.fetchval("SELECT 1 FROM messages WHERE message_id = $1", str(message_id))
				if not exists:
					return None
				await conn.execute(
					"""
					INSERT INTO message_receipts (message_id, user_id, delivered_at, read_at)
					VALUES ($1, $2, $3, $3)
					ON CONFLICT (message_id, user_id)
					DO UPDATE SET
						delivered_at = COALESCE(message_receipts.delivered_at, EXCLUDED.delivered_at),
						read_at = COALESCE(message_receipts.read_at, EXCLUDED.read_at)
					""",
					str(message_id),
					str(user_id),
					read_at,
				)
				return await self._fetch_message(conn, str(message_id))

	async def mark_conversation_read(self, conversation_id: str, user_id: str, read_at: datetime) -> int:
		async with self._connection() as conn:
			result = await conn.execute(
				"""
				INSERT INTO message_receipts (message_id, user_id, delivered_at, read_at)
				SELECT m.message_id, $2, $3, $3
				FROM messages m
				LEFT JOIN message_receipts r ON r.message_id = m.message_id AND r.user_id = $2
				WHERE m.conversation_id = $1 AND m.recipient_id = $2 AND r.read_at IS NULL
				ON CONFLICT (message_id, user_id)
				DO UPDATE SET
					delivered_at = COALESCE(message_receipts.delivered_at, EXCLUDED.delivered_at),
					read_at = EXCLUDED.read_at
				""",
				conversation_id,
				str(user_id),
				read_at,
			)
		# asyncpg returns the command tag, e.g. "INSERT 0 3"
		return int(result.split()[-1]) if result else 0

	async def edit_message(self, message_id: str, content: str, edited_at: datetime) -> Optional[MessageRecord]:
		async with self._connection() as conn:
			async with conn.transaction():
				result = await conn.execute(
					"""
					UPDATE messages SET content = $2, edited_at = $3
					WHERE message_id = $1 AND deleted_at IS NULL
					""",
					str(message_id),
					content,
					edited_at,
				)
				if result.endswith(" 0"):
					return None
				return await self._fetch_message(conn, str(message_id))

	async def delete_message(self, message_id: str, deleted_at: datetime) -> Optional[MessageRecord]:
		async with self._connection() as conn:
			async with conn.transaction():
				result = await conn.execute(
					"""
					UPDATE messages SET content = $2, attachments = '[]'::jsonb, deleted_at = $3
					WHERE message_id = $1 AND deleted_at IS NULL
					""",
					str(message_id),
					DELETED_CONTENT,
					deleted_at,
				)
				if result.endswith(" 0"):
					return None
				await conn.execute("DELETE FROM message_reactions WHERE message_id = $1", str(message_id))
				return await self._fetch_message(conn, str(message_id))

	async def add_reaction(self, message_id: str, user_id: str, emoji: str, added_at: datetime) -> bool:
		async with self._connection() as conn:
			result = await conn.execute(
				"""
				INSERT INTO message_reactions (message_id, user_id, emoji, added_at)
				SELECT m.message_id, $2, $3, $4 FROM messages m
				WHERE m.message_id = $1 AND m.deleted_at IS NULL
				ON CONFLICT (message_id, user_id, emoji) DO NOTHING
				""",
				str(message_id),
				str(user_id),
				emoji,
				added_at,
			)
		return bool(result) and not result.endswith(" 0")

	async def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> bool:
		async with self._connection() as conn:
			result = await conn.execute(
				"DELETE FROM message_reactions WHERE message_id = $1 AND user_id = $2 AND emoji = $3",
				str(message_id),
				str(user_id),
				emoji,
			)
		return bool(result) and not result.endswith(" 0")

	async def add_group_member(self, group_id: str, user_id: str, role: GroupRole = GroupRole.MEMBER) -> bool:
		async with self._connection() as conn:
			result = await conn.execute(
				"""
				INSERT INTO group_members (group_id, user_id, role, is_active)
				VALUES ($1, $2, $3, TRUE)
				ON CONFLICT (group_id, user_id)
				DO UPDATE SET is_active = TRUE, role = EXCLUDED.role
				WHERE NOT group_members.is_active
				""",
				str(group_id),
				str(user_id),
				role.value,
			)
		return bool(result) and not result.endswith(" 0")

	async def remove_group_member(self, group_id: str, user_id: str) -> bool:
		async with self._connection() as conn:
			result = await conn.execute(
				"DELETE FROM group_members WHERE group_id = $1 AND user_id = $2",
				str(group_id),
				str(user_id),
			)
		return bool(result) and not result.endswith(" 0")

	async def _fetch_message(self, conn: asyncpg.Connection, message_id: str) -> Optional[MessageRecord]:
		row = await conn.fetchrow(f"SELECT {_MESSAGE_COLUMNS} FROM messages m WHERE m.message_id = $1", message_id)
		if not row:
			return None
		receipts = await conn.fetch(
			"SELECT user_id, delivered_at, read_at FROM message_receipts WHERE message_id = $1",
			message_id,
		)
		reaction_rows = await conn.fetch(
			"SELECT emoji, user_id FROM message_reactions WHERE message_id = $1 ORDER BY added_at, user_id",
			message_id,
		)
		reactions: Dict[str, tuple[str, ...]] = {}
		for reaction in reaction_rows:
			reactions[reaction["emoji"]] = reactions.get(reaction["emoji"], ()) + (str(reaction["user_id"]),)
		attachments_raw = row["attachments"]
		if isinstance(attachments_raw, str):
			payload = json.loads(attachments_raw) if attachments_raw else []
		else:
			payload = attachments_raw or []
		return MessageRecord(
			message_id=str(row["message_id"]),
			sender_id=str(row["sender_id"]) if row["sender_id"] else None,
			content=row["content"],
			created_at=row["created_at"],
			content_type=row["content_type"],
			recipient_id=str(row["recipient_id"]) if row["recipient_id"] else None,
			group_id=str(row["group_id"]) if row["group_id"] else None,
			conversation_id=row["conversation_id"],
			attachments=tuple(AttachmentMeta(**item) for item in payload),
			delivered_to={str(r["user_id"]): r["delivered_at"] for r in receipts if r["delivered_at"]},
			read_by={str(r["user_id"]): r["read_at"] for r in receipts if r["read_at"]},
			edited_at=row["edited_at"],
			deleted_at=row["deleted_at"],
			reactions=reactions,
		)
