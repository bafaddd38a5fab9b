"""Domain models for the realtime presence and delivery layer."""

from __future__ import annotations

import abc
import enum
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple


class PresenceStatus(str, enum.Enum):
	ONLINE = "online"
	AWAY = "away"
	BUSY = "busy"
	OFFLINE = "offline"


class ConnectionState(str, enum.Enum):
	AUTHENTICATING = "authenticating"
	ACTIVE = "active"
	CLOSED = "closed"


class RoomKind(str, enum.Enum):
	GROUP = "group"
	CONVERSATION = "conversation"
	PERSONAL = "user"


class GroupRole(str, enum.Enum):
	OWNER = "owner"
	ADMIN = "admin"
	MEMBER = "member"


class AccountStatus(str, enum.Enum):
	ACTIVE = "active"
	PENDING = "pending"
	SUSPENDED = "suspended"
	BANNED = "banned"
	DEACTIVATED = "deactivated"


class MessageStatus(str, enum.Enum):
	SENT = "sent"
	DELIVERED = "delivered"
	READ = "read"


@dataclass(frozen=True, slots=True)
class Identity:
	"""Durable user reference plus the display snapshot taken at connect time."""

	id: str
	name: str = ""
	picture: Optional[str] = None
	university: Optional[str] = None

	def snapshot(self) -> Dict[str, Any]:
		return {
			"id": self.id,
			"name": self.name,
			"profilePicture": self.picture,
			"university": self.university,
		}


def conversation_id_for(user_one: str, user_two: str) -> str:
	"""Canonical id of the direct conversation between two users."""
	first, second = sorted((str(user_one), str(user_two)))
	return f"{first}:{second}"


@dataclass(frozen=True, slots=True)
class Room:
	"""Logical fan-out group; derived from durable records, never persisted."""

	kind: RoomKind
	key: str

	@classmethod
	def group(cls, group_id: str) -> "Room":
		return cls(RoomKind.GROUP, str(group_id))

	@classmethod
	def conversation(cls, user_one: str, user_two: str) -> "Room":
		if str(user_one) == str(user_two):
			raise ValueError("conversation requires two distinct users")
		return cls(RoomKind.CONVERSATION, conversation_id_for(user_one, user_two))

	@classmethod
	def personal(cls, user_id: str) -> "Room":
		return cls(RoomKind.PERSONAL, str(user_id))

	@classmethod
	def parse(cls, channel: str) -> "Room":
		"""Parse a channel string such as ``group:<id>`` back into a room."""
		prefix, sep, rest = str(channel or "").partition(":")
		if not sep or not rest:
			raise ValueError(f"invalid room id: {channel!r}")
		try:
			kind = RoomKind(prefix)
		except ValueError as exc:
			raise ValueError(f"invalid room kind: {prefix!r}") from exc
		if kind is RoomKind.CONVERSATION:
			user_one, sep, user_two = rest.partition(":")
			if not sep or not user_one or not user_two or ":" in user_two:
				raise ValueError(f"invalid conversation id: {rest!r}")
			return cls.conversation(user_one, user_two)
		return cls(kind, rest)

	@classmethod
	def from_conversation_id(cls, conversation_id: str) -> "Room":
		return cls.parse(f"{RoomKind.CONVERSATION.value}:{conversation_id}")

	@property
	def channel(self) -> str:
		return f"{self.kind.value}:{self.key}"

	def participants(self) -> Tuple[str, ...]:
		"""Fixed members for conversation and personal rooms; empty for groups."""
		if self.kind is RoomKind.CONVERSATION:
			user_a, user_b = self.key.split(":", 1)
			return (user_a, user_b)
		if self.kind is RoomKind.PERSONAL:
			return (self.key,)
		return ()

	def __str__(self) -> str:
		return self.channel


@dataclass(frozen=True, slots=True)
class OutboundEvent:
	name: str
	payload: Dict[str, Any]


class Connection(abc.ABC):
	"""One live transport channel. The dispatcher only relies on ``deliver``."""

	def __init__(self, connection_id: str, *, clock=time.monotonic) -> None:
		self.connection_id = str(connection_id)
		self.identity: Optional[Identity] = None
		self.state = ConnectionState.AUTHENTICATING
		self.created_at = datetime.now(timezone.utc)
		self._clock = clock
		self.last_activity = clock()

	@abc.abstractmethod
	async def deliver(self, event: OutboundEvent) -> None:
		...

	async def close(self, reason: str) -> None:
		"""Close the underlying transport; transports without one ignore it."""
		return None

	def touch(self) -> None:
		self.last_activity = self._clock()

	def idle_for(self) -> float:
		return self._clock() - self.last_activity

	@property
	def identity_id(self) -> Optional[str]:
		return self.identity.id if self.identity else None

	@property
	def is_active(self) -> bool:
		return self.state is ConnectionState.ACTIVE

	def __hash__(self) -> int:
		return hash(self.connection_id)

	def __eq__(self, other: object) -> bool:
		if not isinstance(other, Connection):
			return NotImplemented
		return self.connection_id == other.connection_id

	def __repr__(self) -> str:
		return f"<{type(self).__name__} {self.connection_id} user={self.identity_id} state={self.state.value}>"


@dataclass(slots=True)
class UserRecord:
	id: str
	name: str
	picture: Optional[str] = None
	university: Optional[str] = None
	status: AccountStatus = AccountStatus.ACTIVE
	is_online: bool = False
	presence_status: Optional[str] = None
	last_seen: Optional[datetime] = None

	def to_identity(self) -> Identity:
		return Identity(id=self.id, name=self.name, picture=self.picture, university=self.university)


@dataclass(slots=True)
class GroupMember:
	user_id: str
	role: GroupRole = GroupRole.MEMBER
	is_active: bool = True


@dataclass(slots=True)
class GroupRecord:
	id: str
	name: str
	is_active: bool = True
	members: list[GroupMember] = field(default_factory=list)

	def member(self, user_id: str) -> Optional[GroupMember]:
		for member in self.members:
			if member.user_id == str(user_id) and member.is_active:
				return member
		return None

	def member_ids(self) -> set[str]:
		return {member.user_id for member in self.members if member.is_active}


@dataclass(frozen=True, slots=True)
class GroupRef:
	id: str
	name: str = ""


@dataclass(frozen=True, slots=True)
class AttachmentMeta:
	file_name: str
	file_url: str
	file_size: Optional[int] = None
	file_type: Optional[str] = None
	thumbnail_url: Optional[str] = None


@dataclass(slots=True)
class MessageDraft:
	sender_id: Optional[str]
	content: str
	content_type: str = "text"
	recipient_id: Optional[str] = None
	group_id: Optional[str] = None
	attachments: Tuple[AttachmentMeta, ...] = ()

	@property
	def conversation_id(self) -> Optional[str]:
		if self.recipient_id and self.sender_id:
			return conversation_id_for(self.sender_id, self.recipient_id)
		return None


@dataclass(slots=True)
class MessageRecord:
	message_id: str
	sender_id: Optional[str]
	content: str
	created_at: datetime
	content_type: str = "text"
	recipient_id: Optional[str] = None
	group_id: Optional[str] = None
	conversation_id: Optional[str] = None
	attachments: Tuple[AttachmentMeta, ...] = ()
	delivered_to: Dict[str, datetime] = field(default_factory=dict)
	read_by: Dict[str, datetime] = field(default_factory=dict)
	edited_at: Optional[datetime] = None
	deleted_at: Optional[datetime] = None
	# emoji -> reacting user ids in the order they reacted
	reactions: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

	@property
	def is_group(self) -> bool:
		return self.group_id is not None

	@property
	def is_deleted(self) -> bool:
		return self.deleted_at is not None

	def participants(self) -> Tuple[str, ...]:
		"""Sender and recipient of a direct message; empty for group messages."""
		if self.group_id is not None:
			return ()
		return tuple(user_id for user_id in (self.sender_id, self.recipient_id) if user_id)

	def has_reaction(self, user_id: str, emoji: str) -> bool:
		return str(user_id) in self.reactions.get(emoji, ())

	@property
	def room(self) -> Optional[Room]:
		if self.group_id is not None:
			return Room.group(self.group_id)
		if self.sender_id and self.recipient_id:
			return Room.conversation(self.sender_id, self.recipient_id)
		return None

	def is_delivered_to(self, user_id: str) -> bool:
		return str(user_id) in self.delivered_to

	def is_read_by(self, user_id: str) -> bool:
		return str(user_id) in self.read_by
