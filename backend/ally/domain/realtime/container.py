"""Explicit construction of the realtime services for one process."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from ally.infra.auth import IdentityResolver, JWTIdentityResolver
from ally.settings import Settings, settings as default_settings

from .dispatcher import EventDispatcher
from .lifecycle import ConnectionLifecycle
from .membership import RoomMembershipIndex
from .presence import PresenceRegistry
from .repo import DurableStore
from .service import RateLimiter, RealtimeService
from .sockets import RealtimeNamespace
from .typing_state import TypingTracker


@dataclass
class RealtimeContainer:
	store: DurableStore
	registry: PresenceRegistry
	index: RoomMembershipIndex
	dispatcher: EventDispatcher
	typing: TypingTracker
	lifecycle: ConnectionLifecycle
	service: RealtimeService
	namespace: RealtimeNamespace


def build_container(
	store: DurableStore,
	*,
	resolver: Optional[IdentityResolver] = None,
	config: Optional[Settings] = None,
	clock: Callable[[], float] = time.monotonic,
	rate_limiter: Optional[RateLimiter] = None,
) -> RealtimeContainer:
	config = config or default_settings
	registry = PresenceRegistry(clock=clock)
	index = RoomMembershipIndex(store)
	dispatcher = EventDispatcher(registry, index)
	typing = TypingTracker(dispatcher, timeout=config.typing_timeout_seconds, clock=clock)
	lifecycle = ConnectionLifecycle(
		registry=registry,
		index=index,
		typing=typing,
		dispatcher=dispatcher,
		resolver=resolver or JWTIdentityResolver(store),
		store=store,
		max_connections_per_user=config.max_connections_per_user,
		idle_timeout_seconds=config.idle_timeout_seconds,
	)
	service = RealtimeService(
		lifecycle,
		store,
		message_max_length=config.message_max_length,
		message_edit_window_seconds=config.message_edit_window_seconds,
		message_rate_limit=config.message_rate_limit,
		message_rate_window_seconds=config.message_rate_window_seconds,
		rate_limiter=rate_limiter,
	)
	return RealtimeContainer(
		store=store,
		registry=registry,
		index=index,
		dispatcher=dispatcher,
		typing=typing,
		lifecycle=lifecycle,
		service=service,
		namespace=RealtimeNamespace(lifecycle, service),
	)
