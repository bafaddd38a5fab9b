"""Socket.IO namespace bridging transport sessions to the realtime core."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import socketio

from ally.obs import logging as obs_logging
from ally.obs import metrics as obs_metrics

from .exceptions import RealtimeError
from .lifecycle import ConnectionLifecycle
from .models import Connection, OutboundEvent
from .service import RealtimeService

logger = logging.getLogger(__name__)


def _header(scope: dict, name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []):
		if key.lower() == target:
			return value.decode()
	return None


def _client_ip(scope: dict) -> Optional[str]:
	forwarded = _header(scope, "x-forwarded-for")
	if forwarded:
		return forwarded.split(",")[0].strip()
	client = scope.get("client")
	if client:
		return str(client[0])
	return None


class SocketConnection(Connection):
	"""Connection sink that emits to a single Socket.IO session."""

	def __init__(self, namespace: socketio.AsyncNamespace, sid: str) -> None:
		super().__init__(sid)
		self._namespace = namespace

	@property
	def sid(self) -> str:
		return self.connection_id

	async def deliver(self, event: OutboundEvent) -> None:
		await self._namespace.emit(event.name, event.payload, room=self.sid)

	async def close(self, reason: str) -> None:
		await self._namespace.disconnect(self.sid)


class RealtimeNamespace(socketio.AsyncNamespace):
	"""Default namespace: presence, rooms, typing and message delivery."""

	def __init__(self, lifecycle: ConnectionLifecycle, service: RealtimeService, namespace: str = "/") -> None:
		super().__init__(namespace)
		self._lifecycle = lifecycle
		self._service = service
		self._connections: Dict[str, SocketConnection] = {}

	def connection(self, sid: str) -> Optional[SocketConnection]:
		return self._connections.get(sid)

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		obs_metrics.socket_connected(self.namespace)
		scope = environ.get("asgi.scope", environ)
		auth_payload = auth or environ.get("auth") or {}
		token = auth_payload.get("token") if isinstance(auth_payload, dict) else None
		token = token or _header(scope, "authorization")
		tokens = obs_logging.bind_context(connection_id=sid, event="connect", client_ip=_client_ip(scope))
		connection = SocketConnection(self, sid)
		self._connections[sid] = connection
		try:
			identity = await self._lifecycle.connect(connection, token)
		except RealtimeError as exc:
			self._connections.pop(sid, None)
			obs_metrics.socket_disconnected(self.namespace)
			logger.info("connection refused: %s", exc.code)
			raise ConnectionRefusedError({"message": exc.message, "code": exc.code}) from None
		finally:
			obs_logging.reset_context(tokens)
		if identity is None:
			self._connections.pop(sid, None)
			obs_metrics.socket_disconnected(self.namespace)
			raise ConnectionRefusedError({"message": "Connection closed", "code": "connection_closed"})

	async def on_disconnect(self, sid: str, reason: Any = None) -> None:
		connection = self._connections.pop(sid, None)
		if connection is None:
			return
		obs_metrics.socket_disconnected(self.namespace)
		tokens = obs_logging.bind_context(connection_id=sid, event="disconnect", user_id=connection.identity_id)
		try:
			await self._lifecycle.disconnect(connection, str(reason or "client_disconnect"))
		finally:
			obs_logging.reset_context(tokens)

	async def _handle(self, sid: str, name: str, payload: Any) -> None:
		connection = self._connections.get(sid)
		if connection is None:
			raise ConnectionRefusedError("unauthenticated")
		tokens = obs_logging.bind_context(connection_id=sid, event=name, user_id=connection.identity_id)
		try:
			await self._service.handle(connection, name, payload)
		finally:
			obs_logging.reset_context(tokens)

	async def on_ping(self, sid: str, payload: Any = None) -> None:
		await self._handle(sid, "ping", payload)

	async def on_status_update(self, sid: str, payload: Any = None) -> None:
		await self._handle(sid, "status_update", payload)

	async def on_join_room(self, sid: str, payload: Any = None) -> None:
		await self._handle(sid, "join_room", payload)

	async def on_leave_room(self, sid: str, payload: Any = None) -> None:
		await self._handle(sid, "leave_room", payload)

	async def on_get_online_users(self, sid: str, payload: Any = None) -> None:
		await self._handle(sid, "get_online_users", payload)

	async def on_typing_start(self, sid: str, payload: Any = None) -> None:
		await self._handle(sid, "typing_start", payload)

	async def on_typing_stop(self, sid: str, payload: Any = None) -> None:
		await self._handle(sid, "typing_stop", payload)

	async def on_get_typing(self, sid: str, payload: Any = None) -> None:
		await self._handle(sid, "get_typing", payload)

	async def on_send_message(self, sid: str, payload: Any = None) -> None:
		await self._handle(sid, "send_message", payload)

	async def on_message_read(self, sid: str, payload: Any = None) -> None:
		await self._handle(sid, "message_read", payload)

	async def on_message_delivered(self, sid: str, payload: Any = None) -> None:
		await self._handle(sid, "message_delivered", payload)

	async def on_mark_conversation_read(self, sid: str, payload: Any = None) -> None:
		await self._handle(sid, "mark_conversation_read", payload)

	async def on_edit_message(self, sid: str, payload: Any = None) -> None:
		await self._handle(sid, "edit_message", payload)

	async def on_delete_message(self, sid: str, payload: Any = None) -> None:
		await self._handle(sid, "delete_message", payload)

	async def on_add_reaction(self, sid: str, payload: Any = None) -> None:
		await self._handle(sid, "add_reaction", payload)

	async def on_remove_reaction(self, sid: str, payload: Any = None) -> None:
		await self._handle(sid, "remove_reaction", payload)

	async def on_remove_member(self, sid: str, payload: Any = None) -> None:
		await self._handle(sid, "remove_member", payload)
