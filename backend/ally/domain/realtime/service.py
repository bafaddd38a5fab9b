"""Inbound event handling: rooms, status, typing, messages and receipts."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ally.infra import rate_limit
from ally.obs import metrics as obs_metrics

from . import events
from .exceptions import (
	ForbiddenError,
	NotFoundError,
	RateLimitedError,
	RealtimeError,
	TransientStoreError,
	ValidationError,
)
from .lifecycle import ConnectionLifecycle
from .models import (
	Connection,
	GroupRecord,
	GroupRole,
	Identity,
	MessageDraft,
	MessageRecord,
	MessageStatus,
	OutboundEvent,
	PresenceStatus,
	Room,
	RoomKind,
)
from .repo import DurableStore

logger = logging.getLogger(__name__)

RateLimiter = Callable[..., Awaitable[bool]]


def _now() -> datetime:
	return datetime.now(timezone.utc)


class RealtimeService:
	"""Validates and executes inbound socket events for active connections.

	Every rejected event yields exactly one ``error`` event to the originating
	connection. Durable writes always complete before peers are notified.
	"""

	def __init__(
		self,
		lifecycle: ConnectionLifecycle,
		store: DurableStore,
		*,
		message_max_length: int = 2000,
		message_edit_window_seconds: int = 900,
		message_rate_limit: int = 30,
		message_rate_window_seconds: int = 60,
		rate_limiter: Optional[RateLimiter] = None,
	) -> None:
		self.lifecycle = lifecycle
		self.registry = lifecycle.registry
		self.index = lifecycle.index
		self.typing = lifecycle.typing
		self.dispatcher = lifecycle.dispatcher
		self._store = store
		self._message_max_length = int(message_max_length)
		self._edit_window = int(message_edit_window_seconds)
		self._rate_limit = int(message_rate_limit)
		self._rate_window = int(message_rate_window_seconds)
		self._allow = rate_limiter or rate_limit.allow
		self._handlers: Dict[type, Callable[[Connection, Identity, Any], Awaitable[None]]] = {
			events.Ping: self._on_ping,
			events.StatusUpdate: self._on_status_update,
			events.JoinRoom: self._on_join_room,
			events.LeaveRoom: self._on_leave_room,
			events.GetOnlineUsers: self._on_get_online_users,
			events.TypingStart: self._on_typing_start,
			events.TypingStop: self._on_typing_stop,
			events.GetTyping: self._on_get_typing,
			events.SendMessage: self._on_send_message,
			events.MessageRead: self._on_message_read,
			events.MessageDelivered: self._on_message_delivered,
			events.MarkConversationRead: self._on_mark_conversation_read,
			events.EditMessage: self._on_edit_message,
			events.DeleteMessage: self._on_delete_message,
			events.AddReaction: self._on_add_reaction,
			events.RemoveReaction: self._on_remove_reaction,
			events.RemoveMember: self._on_remove_member,
		}

	async def handle(self, connection: Connection, name: str, payload: Any = None) -> None:
		obs_metrics.socket_event("/", name)
		identity = connection.identity
		if identity is None or not connection.is_active:
			obs_metrics.socket_reject(name, "unauthorized")
			await self.dispatcher.to_connection(connection, events.error("Not authenticated", "unauthorized", event=name))
			return
		connection.touch()
		self.registry.touch(identity.id, connection)
		try:
			event = events.parse_inbound(name, payload)
			await self._handlers[type(event)](connection, identity, event)
		except RealtimeError as exc:
			obs_metrics.socket_reject(name, exc.code)
			if isinstance(exc, TransientStoreError):
				logger.warning("%s aborted for user=%s: store unavailable", name, identity.id)
			else:
				logger.info("%s rejected for user=%s: %s", name, identity.id, exc.code)
			await self.dispatcher.to_connection(connection, events.error(exc.message, exc.code, event=name))
		except Exception:
			logger.exception("unhandled error while processing %s for user=%s", name, identity.id)
			obs_metrics.socket_reject(name, "internal_error")
			await self.dispatcher.to_connection(connection, events.error("Internal server error", "internal_error", event=name))

	# Presence -----------------------------------------------------------------

	async def _on_ping(self, connection: Connection, identity: Identity, event: events.Ping) -> None:
		await self.dispatcher.to_connection(connection, events.pong())

	async def _on_status_update(self, connection: Connection, identity: Identity, event: events.StatusUpdate) -> None:
		status = event.status
		try:
			await self._store.update_presence(identity.id, online=True, last_seen=_now(), status=status.value)
		except TransientStoreError:
			logger.warning("status write failed for user=%s", identity.id)
		self.registry.set_status(identity.id, status)
		await self.dispatcher.to_identity(identity.id, events.status_updated(status.value))
		await self.dispatcher.to_identities(
			self.index.peers_of(identity.id),
			events.user_status_change(identity.id, status.value),
			exclude=identity.id,
		)

	async def _on_get_online_users(self, connection: Connection, identity: Identity, event: events.GetOnlineUsers) -> None:
		room = event.room()
		if room is not None:
			if not self.index.is_member(identity.id, room):
				raise ForbiddenError("Not a member of this room")
			candidates = set(self.index.members_of(room))
		else:
			candidates = self.index.peers_of(identity.id)
		users: List[Dict[str, Any]] = []
		for user_id in sorted(candidates):
			if not self.registry.is_visible(user_id):
				continue
			entry = self.registry.entry(user_id)
			if entry is None:
				continue
			users.append({**entry.identity.snapshot(), "status": entry.status.value})
		await self.dispatcher.to_connection(connection, events.online_users(users, room=room))

	def presence_of(self, user_id: str) -> Dict[str, Any]:
		entry = self.registry.entry(user_id)
		if entry is None or entry.status is PresenceStatus.OFFLINE:
			return {"userId": str(user_id), "online": False, "status": PresenceStatus.OFFLINE.value}
		return {
			"userId": entry.identity.id,
			"online": True,
			"status": entry.status.value,
			"connections": len(entry.connections),
		}

	# Rooms --------------------------------------------------------------------

	async def _on_join_room(self, connection: Connection, identity: Identity, event: events.JoinRoom) -> None:
		room = event.room()
		await self._authorise_room(identity.id, room)
		joined = self.index.join(identity.id, room)
		await self.dispatcher.to_connection(connection, events.room_joined(room))
		if joined and room.kind is not RoomKind.PERSONAL:
			await self.dispatcher.to_room(room, events.user_joined_room(room, identity), exclude=identity.id)

	async def _on_leave_room(self, connection: Connection, identity: Identity, event: events.LeaveRoom) -> None:
		room = event.room()
		if room.kind is RoomKind.PERSONAL:
			raise ValidationError("Cannot leave the personal room")
		left = self.index.leave(identity.id, room)
		if left:
			await self.typing.stop_typing(room, identity.id)
		await self.dispatcher.to_identity(identity.id, events.room_left(room))
		if left:
			await self.dispatcher.to_room(room, events.user_left_room(room, identity.id), exclude=identity.id)

	async def _authorise_room(self, identity_id: str, room: Room) -> None:
		if room.kind is RoomKind.PERSONAL:
			if room.key != identity_id:
				raise ForbiddenError("Cannot join another user's personal room")
			return
		if room.kind is RoomKind.CONVERSATION:
			participants = room.participants()
			if identity_id not in participants:
				raise ForbiddenError("Not a participant of this conversation")
			other = participants[0] if participants[1] == identity_id else participants[1]
			if await self._store.get_user(other) is None:
				raise NotFoundError("User not found")
			return
		await self._require_group_member(room.key, identity_id)

	async def _require_group_member(self, group_id: str, identity_id: str) -> GroupRecord:
		group = await self._store.get_group(group_id)
		if group is None or not group.is_active:
			raise NotFoundError("Group not found")
		if group.member(identity_id) is None:
			raise ForbiddenError("You are not a member of this group")
		return group

	# Typing -------------------------------------------------------------------

	async def _on_typing_start(self, connection: Connection, identity: Identity, event: events.TypingStart) -> None:
		room = event.room()
		if not self.index.is_member(identity.id, room):
			raise ForbiddenError("Not a member of this room")
		await self.typing.start_typing(room, identity.id)

	async def _on_typing_stop(self, connection: Connection, identity: Identity, event: events.TypingStop) -> None:
		await self.typing.stop_typing(event.room(), identity.id)

	async def _on_get_typing(self, connection: Connection, identity: Identity, event: events.GetTyping) -> None:
		room = event.room()
		if not self.index.is_member(identity.id, room):
			raise ForbiddenError("Not a member of this room")
		typists = [user_id for user_id in self.typing.active_typists(room) if user_id != identity.id]
		await self.dispatcher.to_connection(connection, events.typing_users(room, typists))

	# Messages -----------------------------------------------------------------

	def _clean_content(self, raw: str, *, allow_empty: bool = False) -> str:
		content = raw.strip()
		if not content and not allow_empty:
			raise ValidationError("Message content cannot be empty")
		if len(content) > self._message_max_length:
			raise ValidationError(f"Message cannot exceed {self._message_max_length} characters")
		return content

	async def _on_send_message(self, connection: Connection, identity: Identity, event: events.SendMessage) -> None:
		content = self._clean_content(event.content, allow_empty=bool(event.attachments))

		if event.recipient_id:
			recipient_id = str(event.recipient_id)
			if recipient_id == identity.id:
				raise ValidationError("Cannot send a message to yourself")
			if await self._store.get_user(recipient_id) is None:
				raise NotFoundError("Recipient not found")
			target = {"recipient_id": recipient_id}
		else:
			await self._require_group_member(str(event.group_id), identity.id)
			target = {"group_id": str(event.group_id)}
		# only sends that would be stored spend the budget
		if not await self._allow(
			"chat_send",
			identity.id,
			limit=self._rate_limit,
			window_seconds=self._rate_window,
		):
			raise RateLimitedError("Too many messages, slow down")
		draft = MessageDraft(
			sender_id=identity.id,
			content=content,
			content_type=event.message_type,
			attachments=tuple(item.to_meta() for item in event.attachments),
			**target,
		)

		message = await self._store.create_message(draft)
		room = message.room
		assert room is not None
		obs_metrics.inc_chat_send(room.kind.value)

		if room.kind is RoomKind.CONVERSATION:
			self.index.join(identity.id, room)
			self.index.join(str(message.recipient_id), room)
		await self.typing.stop_typing(room, identity.id)

		await self.dispatcher.to_identity(identity.id, events.new_message(message, MessageStatus.SENT, sender=identity))
		delivered_event = events.new_message(message, MessageStatus.DELIVERED, sender=identity)
		if room.kind is RoomKind.CONVERSATION:
			recipients = [str(message.recipient_id)]
			await self.dispatcher.to_identity(recipients[0], delivered_event)
		else:
			recipients = sorted(self.index.members_of(room) - {identity.id})
			await self.dispatcher.to_room(room, delivered_event, exclude=identity.id)

		online = [user_id for user_id in recipients if self.registry.is_online(user_id)]
		if online:
			await self._record_delivery(message, online)

	async def _record_delivery(self, message: MessageRecord, user_ids: List[str]) -> None:
		delivered_at = _now()
		try:
			await self._store.update_delivery_markers(message.message_id, user_ids, delivered_at)
		except TransientStoreError:
			# the message itself is stored and was delivered; only the marker is lost
			logger.warning("delivery markers not recorded for message=%s", message.message_id)
			return
		if not message.sender_id:
			return
		for user_id in user_ids:
			obs_metrics.inc_chat_delivered()
			await self.dispatcher.to_identity(message.sender_id, events.message_delivered(message, user_id, delivered_at))

	async def _fan_out(self, message: MessageRecord, event: OutboundEvent, actor_id: str) -> None:
		"""Send a message update to the actor's devices and the message audience."""
		await self.dispatcher.to_identity(actor_id, event)
		if message.is_group:
			await self.dispatcher.to_room(Room.group(str(message.group_id)), event, exclude=actor_id)
			return
		for user_id in message.participants():
			if user_id != actor_id:
				await self.dispatcher.to_identity(user_id, event)

	async def _load_own_message(self, message_id: str, identity_id: str) -> MessageRecord:
		message = await self._store.get_message(message_id)
		if message is None or message.is_deleted:
			raise NotFoundError("Message not found")
		if message.sender_id != identity_id:
			raise ForbiddenError("You can only change your own messages")
		return message

	async def _on_edit_message(self, connection: Connection, identity: Identity, event: events.EditMessage) -> None:
		content = self._clean_content(event.new_content)
		message = await self._load_own_message(event.message_id, identity.id)
		edited_at = _now()
		if edited_at - message.created_at > timedelta(seconds=self._edit_window):
			raise ForbiddenError(
				f"Messages can only be edited within {self._edit_window // 60} minutes of sending",
				code="edit_window_expired",
			)
		updated = await self._store.edit_message(message.message_id, content, edited_at)
		if updated is None:
			raise NotFoundError("Message not found")
		await self._fan_out(updated, events.message_edited(updated, sender=identity), identity.id)
		logger.info("message=%s edited by user=%s", updated.message_id, identity.id)

	async def _on_delete_message(self, connection: Connection, identity: Identity, event: events.DeleteMessage) -> None:
		message = await self._load_own_message(event.message_id, identity.id)
		deleted = await self._store.delete_message(message.message_id, _now())
		if deleted is None:
			raise NotFoundError("Message not found")
		await self._fan_out(deleted, events.message_deleted(deleted), identity.id)
		logger.info("message=%s deleted by user=%s", deleted.message_id, identity.id)

	async def _load_for_reaction(self, message_id: str, identity_id: str) -> MessageRecord:
		message = await self._store.get_message(message_id)
		if message is None or message.is_deleted:
			raise NotFoundError("Message not found")
		if message.is_group:
			await self._require_group_member(str(message.group_id), identity_id)
		elif identity_id not in message.participants():
			raise ForbiddenError("Not a participant of this conversation")
		return message

	async def _on_add_reaction(self, connection: Connection, identity: Identity, event: events.AddReaction) -> None:
		message = await self._load_for_reaction(event.message_id, identity.id)
		if not await self._store.add_reaction(message.message_id, identity.id, event.emoji, _now()):
			return
		await self._fan_out(message, events.reaction_added(message, identity, event.emoji), identity.id)

	async def _on_remove_reaction(self, connection: Connection, identity: Identity, event: events.RemoveReaction) -> None:
		message = await self._load_for_reaction(event.message_id, identity.id)
		if not await self._store.remove_reaction(message.message_id, identity.id, event.emoji):
			return
		await self._fan_out(message, events.reaction_removed(message, identity.id, event.emoji), identity.id)

	# Receipts -----------------------------------------------------------------

	async def _load_for_receipt(self, message_id: str, identity_id: str) -> MessageRecord:
		"""Fetch a message the caller sent or may acknowledge."""
		message = await self._store.get_message(message_id)
		if message is None:
			raise NotFoundError("Message not found")
		if message.sender_id == identity_id:
			return message
		if message.is_group:
			await self._require_group_member(str(message.group_id), identity_id)
		elif message.recipient_id != identity_id:
			raise ForbiddenError("Not a recipient of this message")
		return message

	async def _on_message_delivered(self, connection: Connection, identity: Identity, event: events.MessageDelivered) -> None:
		message = await self._load_for_receipt(event.message_id, identity.id)
		if message.sender_id == identity.id or message.is_delivered_to(identity.id):
			return
		delivered_at = _now()
		await self._store.update_delivery_markers(message.message_id, [identity.id], delivered_at)
		obs_metrics.inc_chat_delivered()
		if message.sender_id:
			await self.dispatcher.to_identity(
				message.sender_id, events.message_delivered(message, identity.id, delivered_at)
			)

	async def _on_message_read(self, connection: Connection, identity: Identity, event: events.MessageRead) -> None:
		message = await self._load_for_receipt(event.message_id, identity.id)
		conversation_id = event.conversation_id
		if conversation_id and conversation_id != message.conversation_id:
			raise ValidationError("conversationId does not match the message")
		if message.sender_id == identity.id:
			# nothing to acknowledge on one's own message, but the thread can still be read up
			if conversation_id:
				await self._mark_conversation_read(identity, conversation_id)
			return
		if message.is_read_by(identity.id) and not conversation_id:
			return
		was_delivered = message.is_delivered_to(identity.id)
		was_read = message.is_read_by(identity.id)
		read_at = _now()
		await self._store.mark_read(message.message_id, identity.id, read_at)
		if conversation_id:
			await self._mark_conversation_read(identity, conversation_id, read_at=read_at)
		if was_read or not message.sender_id:
			return
		obs_metrics.inc_chat_read()
		if not was_delivered:
			obs_metrics.inc_chat_delivered()
			await self.dispatcher.to_identity(message.sender_id, events.message_delivered(message, identity.id, read_at))
		await self.dispatcher.to_identity(
			message.sender_id,
			events.message_read(message, identity.id, read_at, conversation_id=conversation_id),
		)

	async def _on_mark_conversation_read(
		self, connection: Connection, identity: Identity, event: events.MarkConversationRead
	) -> None:
		room = event.room()
		if identity.id not in room.participants():
			raise ForbiddenError("Not a participant of this conversation")
		await self._mark_conversation_read(identity, room.key)

	async def _mark_conversation_read(
		self, identity: Identity, conversation_id: str, *, read_at: Optional[datetime] = None
	) -> int:
		read_at = read_at or _now()
		count = await self._store.mark_conversation_read(conversation_id, identity.id, read_at)
		await self.dispatcher.to_identity(identity.id, events.conversation_marked_read(conversation_id, read_at, count=count))
		return count

	# Group membership ---------------------------------------------------------

	async def _on_remove_member(self, connection: Connection, identity: Identity, event: events.RemoveMember) -> None:
		group = await self._store.get_group(event.group_id)
		if group is None or not group.is_active:
			raise NotFoundError("Group not found")
		actor = group.member(identity.id)
		if actor is None or actor.role is GroupRole.MEMBER:
			raise ForbiddenError("Only group owners and admins can remove members")
		target = group.member(event.user_id)
		if target is None:
			raise NotFoundError("User is not a member of this group")
		if target.role is GroupRole.OWNER:
			raise ForbiddenError("Cannot remove the group owner")
		if target.role is GroupRole.ADMIN and actor.role is not GroupRole.OWNER:
			raise ForbiddenError("Only the owner can remove an admin")
		await self._store.remove_group_member(group.id, target.user_id)
		await self.apply_member_removed(group.id, target.user_id, removed_by=identity.id, reason=event.reason)

	async def apply_member_removed(
		self,
		group_id: str,
		user_id: str,
		*,
		removed_by: Optional[str] = None,
		reason: Optional[str] = None,
	) -> None:
		"""Reflect a durable group removal; call after the store was updated."""
		room = Room.group(group_id)
		self.index.leave(str(user_id), room)
		await self.typing.stop_typing(room, str(user_id))
		await self.dispatcher.to_identity(str(user_id), events.removed_from_group(room, removed_by=removed_by, reason=reason))
		await self.dispatcher.to_room(room, events.member_removed(room, str(user_id), removed_by=removed_by))
		logger.info("user=%s removed from group=%s by=%s", user_id, group_id, removed_by)

	async def apply_member_added(self, group_id: str, user_id: str) -> None:
		"""Reflect a durable group join; call after the store was updated."""
		room = Room.group(group_id)
		user_id = str(user_id)
		if not self.index.join(user_id, room):
			return
		entry = self.registry.entry(user_id)
		if entry is None:
			return
		await self.dispatcher.to_identity(user_id, events.room_joined(room))
		await self.dispatcher.to_room(room, events.user_joined_room(room, entry.identity), exclude=user_id)
