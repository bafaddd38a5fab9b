"""Bidirectional identity <-> room index derived from durable memberships."""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Set

from ally.obs import metrics as obs_metrics

from .exceptions import TransientStoreError
from .models import Room, RoomKind
from .repo import DurableStore

logger = logging.getLogger(__name__)


class RoomMembershipIndex:
	"""Room membership kept in memory.

	``join`` and ``leave`` update both directions in one synchronous step. Store
	reads happen only in ``hydrate`` and always complete before any mutation.
	"""

	def __init__(self, store: DurableStore) -> None:
		self._store = store
		self._members: Dict[Room, Set[str]] = {}
		self._rooms: Dict[str, Set[Room]] = {}

	async def hydrate(self, identity_id: str) -> Set[Room]:
		identity_id = str(identity_id)
		personal = Room.personal(identity_id)
		try:
			groups = await self._store.find_groups_by_member(identity_id)
			partners = await self._store.find_conversation_partners(identity_id)
		except TransientStoreError:
			logger.warning("room hydration failed for user=%s; continuing with personal room", identity_id)
			obs_metrics.inc_hydration_failure()
			self.join(identity_id, personal)
			return self.rooms_of(identity_id)

		desired: Set[Room] = {personal}
		desired.update(Room.group(group.id) for group in groups)
		desired.update(Room.conversation(identity_id, partner) for partner in partners if partner != identity_id)

		# Reconcile: durable group memberships that disappeared are dropped here
		for room in list(self._rooms.get(identity_id, ())):
			if room.kind is RoomKind.GROUP and room not in desired:
				self.leave(identity_id, room)
		for room in desired:
			self.join(identity_id, room)
		return self.rooms_of(identity_id)

	def join(self, identity_id: str, room: Room) -> bool:
		"""Add the edge; returns False when it already existed."""
		identity_id = str(identity_id)
		rooms = self._rooms.setdefault(identity_id, set())
		if room in rooms:
			return False
		rooms.add(room)
		self._members.setdefault(room, set()).add(identity_id)
		return True

	def leave(self, identity_id: str, room: Room) -> bool:
		"""Remove the edge; returns False when there was nothing to remove."""
		identity_id = str(identity_id)
		rooms = self._rooms.get(identity_id)
		if not rooms or room not in rooms:
			return False
		rooms.discard(room)
		if not rooms:
			del self._rooms[identity_id]
		members = self._members.get(room)
		if members is not None:
			members.discard(identity_id)
			if not members:
				del self._members[room]
		return True

	def members_of(self, room: Room) -> FrozenSet[str]:
		return frozenset(self._members.get(room, ()))

	def rooms_of(self, identity_id: str) -> Set[Room]:
		return set(self._rooms.get(str(identity_id), ()))

	def is_member(self, identity_id: str, room: Room) -> bool:
		return room in self._rooms.get(str(identity_id), ())

	def peers_of(self, identity_id: str) -> Set[str]:
		"""Every identity sharing at least one room with ``identity_id``."""
		identity_id = str(identity_id)
		peers: Set[str] = set()
		for room in self._rooms.get(identity_id, ()):
			peers.update(self._members.get(room, ()))
		peers.discard(identity_id)
		return peers
