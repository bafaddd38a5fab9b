"""Ephemeral typing indicators with debounce and expiry."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple

from ally.obs import metrics as obs_metrics

from . import events
from .dispatcher import EventDispatcher
from .models import Room

logger = logging.getLogger(__name__)


@dataclass
class TypingEntry:
	room: Room
	identity_id: str
	started_at: float
	updated_at: float


class TypingTracker:
	"""Tracks who is typing where.

	``started_at`` is the time of the last "typing started" notification and
	``updated_at`` the time of the last refresh. An entry is expired once it has
	not been refreshed for ``timeout`` seconds; expired entries are filtered on
	read and removed by ``sweep``.
	"""

	def __init__(
		self,
		dispatcher: EventDispatcher,
		*,
		timeout: float = 3.0,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self._dispatcher = dispatcher
		self._timeout = float(timeout)
		self._clock = clock
		self._entries: Dict[Room, Dict[str, TypingEntry]] = {}

	@property
	def timeout(self) -> float:
		return self._timeout

	def _expired(self, entry: TypingEntry, now: float) -> bool:
		return now - entry.updated_at > self._timeout

	async def start_typing(self, room: Room, identity_id: str) -> bool:
		"""Upsert the entry; returns True when a notification went out."""
		identity_id = str(identity_id)
		now = self._clock()
		room_entries = self._entries.setdefault(room, {})
		entry = room_entries.get(identity_id)
		if entry is not None and not self._expired(entry, now):
			entry.updated_at = now
			if now - entry.started_at < self._timeout:
				return False
			entry.started_at = now
		else:
			# expired entries restart at the end of the display order
			room_entries.pop(identity_id, None)
			room_entries[identity_id] = TypingEntry(room=room, identity_id=identity_id, started_at=now, updated_at=now)
		obs_metrics.inc_typing("start")
		await self._dispatcher.to_room(room, events.user_typing(room, identity_id, True), exclude=identity_id)
		return True

	async def stop_typing(self, room: Room, identity_id: str) -> bool:
		identity_id = str(identity_id)
		if self._pop(room, identity_id) is None:
			return False
		obs_metrics.inc_typing("stop")
		await self._dispatcher.to_room(room, events.user_typing(room, identity_id, False), exclude=identity_id)
		return True

	async def clear_identity(self, identity_id: str) -> int:
		"""Drop every entry owned by ``identity_id`` and announce the stops."""
		identity_id = str(identity_id)
		cleared: List[Room] = []
		for room in list(self._entries):
			if self._pop(room, identity_id) is not None:
				cleared.append(room)
		for room in cleared:
			await self._dispatcher.to_room(room, events.user_typing(room, identity_id, False), exclude=identity_id)
		return len(cleared)

	async def sweep(self) -> int:
		now = self._clock()
		expired: List[Tuple[Room, str]] = []
		for room, room_entries in list(self._entries.items()):
			for identity_id, entry in list(room_entries.items()):
				if self._expired(entry, now):
					expired.append((room, identity_id))
		for room, identity_id in expired:
			self._pop(room, identity_id)
		if expired:
			obs_metrics.inc_typing_expired(len(expired))
			logger.debug("typing sweep expired %s entries", len(expired))
		for room, identity_id in expired:
			await self._dispatcher.to_room(room, events.user_typing(room, identity_id, False), exclude=identity_id)
		return len(expired)

	def active_typists(self, room: Room) -> List[str]:
		now = self._clock()
		return [
			identity_id
			for identity_id, entry in self._entries.get(room, {}).items()
			if not self._expired(entry, now)
		]

	def is_typing(self, room: Room, identity_id: str) -> bool:
		entry = self._entries.get(room, {}).get(str(identity_id))
		return entry is not None and not self._expired(entry, self._clock())

	def _pop(self, room: Room, identity_id: str):
		room_entries = self._entries.get(room)
		if not room_entries:
			return None
		entry = room_entries.pop(identity_id, None)
		if not room_entries:
			del self._entries[room]
		return entry
