"""In-memory presence registry: connected identities and their connections."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional

from ally.obs import metrics as obs_metrics

from .models import Connection, Identity, PresenceStatus


@dataclass
class PresenceEntry:
	identity: Identity
	connections: Dict[str, Connection] = field(default_factory=dict)
	status: PresenceStatus = PresenceStatus.ONLINE
	last_activity: float = 0.0


class PresenceRegistry:
	"""Process-wide table of online identities.

	An entry exists exactly while its identity owns at least one connection.
	Every method is synchronous, so callers never observe a half-applied update.
	"""

	def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
		self._clock = clock
		self._entries: Dict[str, PresenceEntry] = {}

	def register(self, identity: Identity, connection: Connection) -> PresenceEntry:
		entry = self._entries.get(identity.id)
		if entry is None:
			entry = PresenceEntry(identity=identity)
			self._entries[identity.id] = entry
		else:
			# keep the freshest display snapshot
			entry.identity = identity
		entry.connections[connection.connection_id] = connection
		connection.identity = identity
		entry.last_activity = self._clock()
		connection.touch()
		self._publish()
		return entry

	def deregister(self, identity_id: str, connection: Connection) -> bool:
		"""Drop ``connection``; return True when the identity is now fully offline."""
		entry = self._entries.get(str(identity_id))
		if entry is None:
			return True
		entry.connections.pop(connection.connection_id, None)
		if entry.connections:
			self._publish()
			return False
		del self._entries[str(identity_id)]
		self._publish()
		return True

	def touch(self, identity_id: str, connection: Optional[Connection] = None) -> None:
		entry = self._entries.get(str(identity_id))
		if entry is None:
			return
		entry.last_activity = self._clock()
		if connection is not None and connection.connection_id in entry.connections:
			connection.touch()

	def is_online(self, identity_id: str) -> bool:
		return str(identity_id) in self._entries

	def is_visible(self, identity_id: str) -> bool:
		"""Online and not hiding behind an explicit ``offline`` status."""
		entry = self._entries.get(str(identity_id))
		return entry is not None and entry.status is not PresenceStatus.OFFLINE

	def connections_of(self, identity_id: str) -> FrozenSet[Connection]:
		entry = self._entries.get(str(identity_id))
		if entry is None:
			return frozenset()
		return frozenset(entry.connections.values())

	def entry(self, identity_id: str) -> Optional[PresenceEntry]:
		return self._entries.get(str(identity_id))

	def status_of(self, identity_id: str) -> PresenceStatus:
		entry = self._entries.get(str(identity_id))
		return entry.status if entry else PresenceStatus.OFFLINE

	def set_status(self, identity_id: str, status: PresenceStatus) -> bool:
		"""Set status on an existing entry; returns False for offline identities."""
		entry = self._entries.get(str(identity_id))
		if entry is None:
			return False
		entry.status = status
		entry.last_activity = self._clock()
		return True

	def online_identities(self) -> List[Identity]:
		return [entry.identity for entry in self._entries.values()]

	def idle_connections(self, threshold_seconds: float) -> List[Connection]:
		idle: List[Connection] = []
		for entry in self._entries.values():
			for connection in entry.connections.values():
				if connection.idle_for() > threshold_seconds:
					idle.append(connection)
		return idle

	def connection_count(self) -> int:
		return sum(len(entry.connections) for entry in self._entries.values())

	def __len__(self) -> int:
		return len(self._entries)

	def _publish(self) -> None:
		obs_metrics.presence_snapshot(len(self._entries), self.connection_count())
