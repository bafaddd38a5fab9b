"""Fan-out of outbound events to live connections."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional

from ally.obs import metrics as obs_metrics

from .membership import RoomMembershipIndex
from .models import Connection, ConnectionState, OutboundEvent, Room
from .presence import PresenceRegistry

logger = logging.getLogger(__name__)


class EventDispatcher:
	"""Deliver events to identities, rooms or single connections.

	Targets are resolved into a connection snapshot before the first await, and
	each connection receives at most one copy per call. The dispatcher never
	touches the durable store: callers persist first, then dispatch.
	"""

	def __init__(self, registry: PresenceRegistry, index: RoomMembershipIndex) -> None:
		self._registry = registry
		self._index = index

	async def to_connection(self, connection: Connection, event: OutboundEvent) -> int:
		return await self._deliver({connection.connection_id: connection}, event)

	async def to_identity(self, identity_id: str, event: OutboundEvent) -> int:
		targets = {conn.connection_id: conn for conn in self._registry.connections_of(identity_id)}
		return await self._deliver(targets, event)

	async def to_identities(
		self,
		identity_ids: Iterable[str],
		event: OutboundEvent,
		*,
		exclude: Optional[str] = None,
	) -> int:
		targets: Dict[str, Connection] = {}
		for identity_id in set(identity_ids):
			if exclude is not None and identity_id == exclude:
				continue
			for conn in self._registry.connections_of(identity_id):
				targets[conn.connection_id] = conn
		return await self._deliver(targets, event)

	async def to_room(self, room: Room, event: OutboundEvent, *, exclude: Optional[str] = None) -> int:
		return await self.to_identities(self._index.members_of(room), event, exclude=exclude)

	async def _deliver(self, targets: Dict[str, Connection], event: OutboundEvent) -> int:
		delivered = 0
		for connection in list(targets.values()):
			if connection.state is ConnectionState.CLOSED:
				continue
			try:
				await connection.deliver(event)
			except Exception:
				logger.warning(
					"delivery of %s to connection=%s failed",
					event.name,
					connection.connection_id,
					exc_info=True,
				)
				obs_metrics.inc_dispatch_failure(event.name)
				continue
			delivered += 1
		if delivered:
			obs_metrics.inc_dispatch(event.name, delivered)
		return delivered
