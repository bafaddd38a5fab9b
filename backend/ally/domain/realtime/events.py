"""Inbound and outbound socket event shapes.

Inbound payloads are validated at the transport boundary through a discriminated
union keyed on ``type`` (the socket event name). Outbound builders return
``OutboundEvent`` values with camelCase payload keys.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .exceptions import ValidationError
from .models import (
	AttachmentMeta,
	Identity,
	MessageRecord,
	MessageStatus,
	OutboundEvent,
	PresenceStatus,
	Room,
	RoomKind,
)


class _InboundModel(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class _RoomTarget(_InboundModel):
	"""Addresses a room by channel id, conversation id or bare group id."""

	room_id: Optional[str] = None
	conversation_id: Optional[str] = None
	group_id: Optional[str] = None

	@model_validator(mode="after")
	def _one_target(self):
		if not (self.room_id or self.conversation_id or self.group_id):
			raise ValueError("roomId, conversationId or groupId is required")
		self.room()
		return self

	def room(self) -> Room:
		if self.room_id:
			return Room.parse(self.room_id)
		if self.conversation_id:
			return Room.from_conversation_id(self.conversation_id)
		return Room.group(str(self.group_id))


class Ping(_InboundModel):
	type: Literal["ping"] = "ping"


class StatusUpdate(_InboundModel):
	type: Literal["status_update"] = "status_update"
	status: PresenceStatus


class JoinRoom(_RoomTarget):
	type: Literal["join_room"] = "join_room"


class LeaveRoom(_RoomTarget):
	type: Literal["leave_room"] = "leave_room"


class GetOnlineUsers(_InboundModel):
	type: Literal["get_online_users"] = "get_online_users"
	room_id: Optional[str] = None

	@model_validator(mode="after")
	def _valid_room(self):
		self.room()
		return self

	def room(self) -> Optional[Room]:
		return Room.parse(self.room_id) if self.room_id else None


class TypingStart(_RoomTarget):
	type: Literal["typing_start"] = "typing_start"


class TypingStop(_RoomTarget):
	type: Literal["typing_stop"] = "typing_stop"


class GetTyping(_RoomTarget):
	type: Literal["get_typing"] = "get_typing"


class Attachment(_InboundModel):
	file_name: str = Field(..., min_length=1, max_length=255)
	file_url: str = Field(..., min_length=1)
	file_size: Optional[int] = Field(default=None, ge=0)
	file_type: Optional[str] = None
	thumbnail_url: Optional[str] = None

	def to_meta(self) -> AttachmentMeta:
		return AttachmentMeta(
			file_name=self.file_name,
			file_url=self.file_url,
			file_size=self.file_size,
			file_type=self.file_type,
			thumbnail_url=self.thumbnail_url,
		)


class SendMessage(_InboundModel):
	type: Literal["send_message"] = "send_message"
	recipient_id: Optional[str] = None
	group_id: Optional[str] = None
	content: str = ""
	message_type: Literal["text", "image", "file", "system"] = "text"
	attachments: List[Attachment] = Field(default_factory=list, max_length=10)

	@model_validator(mode="after")
	def _exactly_one_target(self):
		if bool(self.recipient_id) == bool(self.group_id):
			raise ValueError("exactly one of recipientId or groupId is required")
		return self


class MessageRead(_InboundModel):
	type: Literal["message_read"] = "message_read"
	message_id: str = Field(..., min_length=1)
	conversation_id: Optional[str] = None


class MessageDelivered(_InboundModel):
	type: Literal["message_delivered"] = "message_delivered"
	message_id: str = Field(..., min_length=1)


class MarkConversationRead(_InboundModel):
	type: Literal["mark_conversation_read"] = "mark_conversation_read"
	conversation_id: str = Field(..., min_length=1)

	@model_validator(mode="after")
	def _valid_conversation(self):
		self.room()
		return self

	def room(self) -> Room:
		return Room.from_conversation_id(self.conversation_id)


class EditMessage(_InboundModel):
	type: Literal["edit_message"] = "edit_message"
	message_id: str = Field(..., min_length=1)
	new_content: str = ""


class DeleteMessage(_InboundModel):
	type: Literal["delete_message"] = "delete_message"
	message_id: str = Field(..., min_length=1)


class _Reaction(_InboundModel):
	message_id: str = Field(..., min_length=1)
	emoji: str = Field(..., min_length=1, max_length=32)

	@model_validator(mode="after")
	def _strip_emoji(self):
		self.emoji = self.emoji.strip()
		if not self.emoji:
			raise ValueError("emoji is required")
		return self


class AddReaction(_Reaction):
	type: Literal["add_reaction"] = "add_reaction"


class RemoveReaction(_Reaction):
	type: Literal["remove_reaction"] = "remove_reaction"


class RemoveMember(_InboundModel):
	type: Literal["remove_member"] = "remove_member"
	group_id: str = Field(..., min_length=1)
	user_id: str = Field(..., min_length=1)
	reason: Optional[str] = Field(default=None, max_length=500)


InboundEvent = Annotated[
	Union[
		Ping,
		StatusUpdate,
		JoinRoom,
		LeaveRoom,
		GetOnlineUsers,
		TypingStart,
		TypingStop,
		GetTyping,
		SendMessage,
		MessageRead,
		MessageDelivered,
		MarkConversationRead,
		EditMessage,
		DeleteMessage,
		AddReaction,
		RemoveReaction,
		RemoveMember,
	],
	Field(discriminator="type"),
]

_INBOUND_ADAPTER: TypeAdapter[InboundEvent] = TypeAdapter(InboundEvent)

INBOUND_EVENT_NAMES = frozenset(
	{
		"ping",
		"status_update",
		"join_room",
		"leave_room",
		"get_online_users",
		"typing_start",
		"typing_stop",
		"get_typing",
		"send_message",
		"message_read",
		"message_delivered",
		"mark_conversation_read",
		"edit_message",
		"delete_message",
		"add_reaction",
		"remove_reaction",
		"remove_member",
	}
)


def parse_inbound(name: str, payload: Any) -> InboundEvent:
	"""Validate a raw socket payload for event ``name``."""
	if name not in INBOUND_EVENT_NAMES:
		raise ValidationError(f"Unknown event: {name}")
	if payload is None:
		payload = {}
	if not isinstance(payload, dict):
		raise ValidationError("Payload must be an object")
	try:
		return _INBOUND_ADAPTER.validate_python({**payload, "type": name})
	except PydanticValidationError as exc:
		first = exc.errors()[0] if exc.errors() else {}
		detail = str(first.get("msg") or "invalid payload")
		raise ValidationError(detail) from None


class MessagePayload(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

	message_id: str
	sender_id: Optional[str]
	recipient_id: Optional[str] = None
	group_id: Optional[str] = None
	conversation_id: Optional[str] = None
	content: str
	message_type: str
	attachments: List[Dict[str, Any]] = Field(default_factory=list)
	created_at: datetime
	status: MessageStatus
	sender: Optional[Dict[str, Any]] = None

	@classmethod
	def from_record(
		cls,
		message: MessageRecord,
		*,
		status: MessageStatus,
		sender: Optional[Identity] = None,
	) -> "MessagePayload":
		return cls(
			message_id=message.message_id,
			sender_id=message.sender_id,
			recipient_id=message.recipient_id,
			group_id=message.group_id,
			conversation_id=message.conversation_id,
			content=message.content,
			message_type=message.content_type,
			attachments=[_attachment_payload(meta) for meta in message.attachments],
			created_at=message.created_at,
			status=status,
			sender=sender.snapshot() if sender else None,
		)


def _attachment_payload(meta: AttachmentMeta) -> Dict[str, Any]:
	return {
		"fileName": meta.file_name,
		"fileUrl": meta.file_url,
		"fileSize": meta.file_size,
		"fileType": meta.file_type,
		"thumbnailUrl": meta.thumbnail_url,
	}


def _iso(value: Optional[datetime]) -> Optional[str]:
	return value.isoformat() if value else None


def _room_payload(room: Room) -> Dict[str, Any]:
	payload: Dict[str, Any] = {"roomId": room.channel, "type": room.kind.value}
	if room.kind is RoomKind.GROUP:
		payload["groupId"] = room.key
	elif room.kind is RoomKind.CONVERSATION:
		payload["conversationId"] = room.key
	return payload


def connected(identity: Identity, rooms: Iterable[Room]) -> OutboundEvent:
	return OutboundEvent(
		"connected",
		{
			"userId": identity.id,
			"userData": identity.snapshot(),
			"rooms": sorted(room.channel for room in rooms),
		},
	)


def pong(timestamp: Optional[float] = None) -> OutboundEvent:
	return OutboundEvent("pong", {"timestamp": int((timestamp or time.time()) * 1000)})


def user_status_change(user_id: str, status: str, *, last_seen: Optional[datetime] = None) -> OutboundEvent:
	payload: Dict[str, Any] = {"userId": user_id, "status": status}
	if last_seen is not None:
		payload["lastSeen"] = _iso(last_seen)
	return OutboundEvent("user_status_change", payload)


def status_updated(status: str) -> OutboundEvent:
	return OutboundEvent("status_updated", {"status": status})


def member_online(room: Room, identity: Identity) -> OutboundEvent:
	return OutboundEvent("member_online", {**_room_payload(room), "userId": identity.id, "user": identity.snapshot()})


def member_offline(room: Room, user_id: str, *, last_seen: Optional[datetime] = None) -> OutboundEvent:
	return OutboundEvent("member_offline", {**_room_payload(room), "userId": user_id, "lastSeen": _iso(last_seen)})


def user_typing(room: Room, user_id: str, is_typing: bool) -> OutboundEvent:
	return OutboundEvent("user_typing", {**_room_payload(room), "userId": user_id, "isTyping": is_typing})


def typing_users(room: Room, user_ids: List[str]) -> OutboundEvent:
	return OutboundEvent("typing_users", {**_room_payload(room), "users": list(user_ids)})


def new_message(message: MessageRecord, status: MessageStatus, *, sender: Optional[Identity] = None) -> OutboundEvent:
	body = MessagePayload.from_record(message, status=status, sender=sender)
	return OutboundEvent("new_message", body.model_dump(by_alias=True, mode="json"))


def message_delivered(message: MessageRecord, user_id: str, delivered_at: datetime) -> OutboundEvent:
	return OutboundEvent(
		"message_delivered",
		{
			"messageId": message.message_id,
			"conversationId": message.conversation_id,
			"groupId": message.group_id,
			"userId": user_id,
			"deliveredAt": _iso(delivered_at),
		},
	)


def message_read(
	message: MessageRecord,
	user_id: str,
	read_at: datetime,
	*,
	conversation_id: Optional[str] = None,
) -> OutboundEvent:
	return OutboundEvent(
		"message_read",
		{
			"messageId": message.message_id,
			"conversationId": conversation_id or message.conversation_id,
			"groupId": message.group_id,
			"userId": user_id,
			"readAt": _iso(read_at),
		},
	)


def conversation_marked_read(conversation_id: str, read_at: datetime, *, count: int) -> OutboundEvent:
	return OutboundEvent(
		"conversation_marked_read",
		{"conversationId": conversation_id, "readAt": _iso(read_at), "count": count},
	)


def _message_ref(message: MessageRecord) -> Dict[str, Any]:
	return {
		"messageId": message.message_id,
		"conversationId": message.conversation_id,
		"groupId": message.group_id,
	}


def message_edited(message: MessageRecord, *, sender: Optional[Identity] = None) -> OutboundEvent:
	return OutboundEvent(
		"message_edited",
		{
			**_message_ref(message),
			"senderId": message.sender_id,
			"sender": sender.snapshot() if sender else None,
			"content": message.content,
			"isEdited": True,
			"editedAt": _iso(message.edited_at),
		},
	)


def message_deleted(message: MessageRecord) -> OutboundEvent:
	return OutboundEvent("message_deleted", {**_message_ref(message), "deletedAt": _iso(message.deleted_at)})


def reaction_added(message: MessageRecord, identity: Identity, emoji: str) -> OutboundEvent:
	return OutboundEvent(
		"reaction_added",
		{**_message_ref(message), "emoji": emoji, "userId": identity.id, "userName": identity.name},
	)


def reaction_removed(message: MessageRecord, user_id: str, emoji: str) -> OutboundEvent:
	return OutboundEvent("reaction_removed", {**_message_ref(message), "emoji": emoji, "userId": user_id})


def room_joined(room: Room) -> OutboundEvent:
	return OutboundEvent("room_joined", _room_payload(room))


def room_left(room: Room) -> OutboundEvent:
	return OutboundEvent("room_left", _room_payload(room))


def user_joined_room(room: Room, identity: Identity) -> OutboundEvent:
	return OutboundEvent("user_joined_room", {**_room_payload(room), "userId": identity.id, "user": identity.snapshot()})


def user_left_room(room: Room, user_id: str) -> OutboundEvent:
	return OutboundEvent("user_left_room", {**_room_payload(room), "userId": user_id})


def member_removed(room: Room, user_id: str, *, removed_by: Optional[str] = None) -> OutboundEvent:
	return OutboundEvent("member_removed", {**_room_payload(room), "userId": user_id, "removedBy": removed_by})


def removed_from_group(room: Room, *, removed_by: Optional[str] = None, reason: Optional[str] = None) -> OutboundEvent:
	return OutboundEvent(
		"removed_from_group",
		{**_room_payload(room), "removedBy": removed_by, "reason": reason},
	)


def online_users(users: List[Dict[str, Any]], *, room: Optional[Room] = None) -> OutboundEvent:
	payload: Dict[str, Any] = {"users": users}
	if room is not None:
		payload["roomId"] = room.channel
	return OutboundEvent("online_users", payload)


def error(message: str, code: str, *, event: Optional[str] = None) -> OutboundEvent:
	payload: Dict[str, Any] = {"message": message, "code": code}
	if event:
		payload["event"] = event
	return OutboundEvent("error", payload)
