"""Realtime presence, room membership and message delivery."""

from .exceptions import (
	AuthError,
	ConnectionLimitError,
	ForbiddenError,
	NotFoundError,
	RateLimitedError,
	RealtimeError,
	TransientStoreError,
	ValidationError,
)
from .models import Connection, Identity, OutboundEvent, PresenceStatus, Room, RoomKind

__all__ = [
	"AuthError",
	"Connection",
	"ConnectionLimitError",
	"ForbiddenError",
	"Identity",
	"NotFoundError",
	"OutboundEvent",
	"PresenceStatus",
	"RateLimitedError",
	"RealtimeError",
	"Room",
	"RoomKind",
	"TransientStoreError",
	"ValidationError",
]
