"""Connect / disconnect orchestration for realtime connections."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Optional

from ally.infra.auth import IdentityResolver
from ally.obs import metrics as obs_metrics

from . import events
from .dispatcher import EventDispatcher
from .exceptions import AuthError, ConnectionLimitError, TransientStoreError
from .membership import RoomMembershipIndex
from .models import Connection, ConnectionState, Identity, PresenceStatus, RoomKind
from .presence import PresenceRegistry
from .repo import DurableStore
from .typing_state import TypingTracker

logger = logging.getLogger(__name__)


class KeyedLock:
	"""One FIFO ``asyncio.Lock`` per key, dropped once nobody holds or awaits it."""

	def __init__(self) -> None:
		self._locks: Dict[str, asyncio.Lock] = {}
		self._users: Dict[str, int] = {}

	@asynccontextmanager
	async def hold(self, key: str) -> AsyncIterator[None]:
		lock = self._locks.get(key)
		if lock is None:
			lock = asyncio.Lock()
			self._locks[key] = lock
		self._users[key] = self._users.get(key, 0) + 1
		try:
			async with lock:
				yield
		finally:
			remaining = self._users[key] - 1
			if remaining:
				self._users[key] = remaining
			else:
				del self._users[key]
				del self._locks[key]

	def __len__(self) -> int:
		return len(self._locks)


class ConnectionLifecycle:
	"""Drives connections through AUTHENTICATING -> ACTIVE -> CLOSED.

	Connects and disconnects of one identity are serialised in arrival order;
	different identities proceed independently.
	"""

	def __init__(
		self,
		*,
		registry: PresenceRegistry,
		index: RoomMembershipIndex,
		typing: TypingTracker,
		dispatcher: EventDispatcher,
		resolver: IdentityResolver,
		store: DurableStore,
		max_connections_per_user: int = 5,
		idle_timeout_seconds: float = 300.0,
	) -> None:
		self.registry = registry
		self.index = index
		self.typing = typing
		self.dispatcher = dispatcher
		self._resolver = resolver
		self._store = store
		self._max_connections = max(1, int(max_connections_per_user))
		self._idle_timeout = float(idle_timeout_seconds)
		self._locks = KeyedLock()

	async def connect(self, connection: Connection, token: Optional[str]) -> Optional[Identity]:
		"""Authenticate and activate ``connection``.

		Returns the resolved identity, or None when the connection was closed
		while the handshake was still in flight. Raises AuthError or
		ConnectionLimitError without creating any state.
		"""
		try:
			identity = await self._resolver.verify(token)
		except AuthError as exc:
			connection.state = ConnectionState.CLOSED
			obs_metrics.socket_reject("connect", exc.code)
			raise

		async with self._locks.hold(identity.id):
			if connection.state is ConnectionState.CLOSED:
				return None
			if len(self.registry.connections_of(identity.id)) >= self._max_connections:
				connection.state = ConnectionState.CLOSED
				obs_metrics.socket_reject("connect", ConnectionLimitError.code)
				raise ConnectionLimitError()

			rooms = await self.index.hydrate(identity.id)
			if connection.state is ConnectionState.CLOSED:
				return None

			first_connection = not self.registry.is_online(identity.id)
			self.registry.register(identity, connection)
			connection.state = ConnectionState.ACTIVE

			await self.dispatcher.to_connection(connection, events.connected(identity, rooms))
			if first_connection:
				await self._persist_presence(identity.id, online=True)
				for room in rooms:
					if room.kind is RoomKind.GROUP:
						await self.dispatcher.to_room(room, events.member_online(room, identity), exclude=identity.id)
				await self.dispatcher.to_identities(
					self.index.peers_of(identity.id),
					events.user_status_change(identity.id, "online"),
					exclude=identity.id,
				)
			logger.info(
				"connection=%s active for user=%s (connections=%s, rooms=%s)",
				connection.connection_id,
				identity.id,
				len(self.registry.connections_of(identity.id)),
				len(rooms),
			)
			return identity

	async def disconnect(self, connection: Connection, reason: str = "client_disconnect") -> bool:
		"""Close ``connection``; returns True when its identity went offline.

		Idempotent: closing an already closed connection does nothing.
		"""
		if connection.state is ConnectionState.CLOSED:
			return False
		identity = connection.identity
		if identity is None:
			# handshake still pending; connect() notices and aborts
			connection.state = ConnectionState.CLOSED
			return False

		async with self._locks.hold(identity.id):
			if connection.state is ConnectionState.CLOSED:
				return False
			connection.state = ConnectionState.CLOSED
			rooms = self.index.rooms_of(identity.id)
			was_hidden = self.registry.status_of(identity.id) is PresenceStatus.OFFLINE
			if not self.registry.deregister(identity.id, connection):
				logger.info(
					"connection=%s closed (%s); user=%s still has %s connection(s)",
					connection.connection_id,
					reason,
					identity.id,
					len(self.registry.connections_of(identity.id)),
				)
				return False

			last_seen = datetime.now(timezone.utc)
			await self.typing.clear_identity(identity.id)
			await self._persist_presence(identity.id, online=False, last_seen=last_seen)
			for room in rooms:
				if room.kind is RoomKind.PERSONAL:
					continue
				await self.dispatcher.to_room(
					room,
					events.member_offline(room, identity.id, last_seen=last_seen),
					exclude=identity.id,
				)
			# peers already saw "offline" when the status was set
			if not was_hidden:
				await self.dispatcher.to_identities(
					self.index.peers_of(identity.id),
					events.user_status_change(identity.id, "offline", last_seen=last_seen),
					exclude=identity.id,
				)
			logger.info("user=%s offline after connection=%s closed (%s)", identity.id, connection.connection_id, reason)
			return True

	async def force_disconnect(self, connection: Connection, reason: str) -> bool:
		"""Server-initiated close with the same side effects as a client close."""
		went_offline = await self.disconnect(connection, reason)
		try:
			await connection.close(reason)
		except Exception:
			logger.warning("transport close failed for connection=%s", connection.connection_id, exc_info=True)
		return went_offline

	async def sweep_idle(self) -> int:
		closed = 0
		for connection in self.registry.idle_connections(self._idle_timeout):
			# activity may have arrived while an earlier close was awaited
			if connection.idle_for() <= self._idle_timeout or connection.state is ConnectionState.CLOSED:
				continue
			logger.info(
				"closing idle connection=%s user=%s idle_for=%.1fs",
				connection.connection_id,
				connection.identity_id,
				connection.idle_for(),
			)
			await self.force_disconnect(connection, "idle_timeout")
			closed += 1
		if closed:
			obs_metrics.inc_idle_disconnect(closed)
		return closed

	async def _persist_presence(
		self,
		identity_id: str,
		*,
		online: bool,
		last_seen: Optional[datetime] = None,
	) -> None:
		try:
			await self._store.update_presence(
				identity_id,
				online=online,
				last_seen=last_seen or datetime.now(timezone.utc),
			)
		except TransientStoreError:
			logger.warning("presence write failed for user=%s (online=%s)", identity_id, online)
