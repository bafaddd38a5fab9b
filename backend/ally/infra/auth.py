"""Identity resolution for realtime connections.

Access tokens are HS256 JWTs issued by the main API; ``sub`` carries the user id.
The user record is looked up in the durable store so the display snapshot is
fresh at connect time and suspended or banned accounts are refused.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from jwt import InvalidTokenError

from ally.domain.realtime.exceptions import AuthError
from ally.domain.realtime.models import AccountStatus, Identity
from ally.domain.realtime.repo import DurableStore
from ally.infra import jwt as jwt_helper

logger = logging.getLogger(__name__)

_BLOCKED_STATUSES = frozenset({AccountStatus.SUSPENDED, AccountStatus.BANNED})


class IdentityResolver(Protocol):
	async def verify(self, token: Optional[str]) -> Identity:
		...


def bearer_token(value: Optional[str]) -> Optional[str]:
	"""Strip an optional ``Bearer`` prefix from a credential."""
	if not value:
		return None
	value = value.strip()
	if value.lower().startswith("bearer "):
		value = value.split(" ", 1)[1].strip()
	return value or None


class JWTIdentityResolver:
	def __init__(self, store: DurableStore) -> None:
		self._store = store

	async def verify(self, token: Optional[str]) -> Identity:
		token = bearer_token(token)
		if not token:
			raise AuthError("Authentication token required")
		try:
			payload = jwt_helper.decode_access(token)
		except InvalidTokenError as exc:
			logger.info("rejected access token: %s", type(exc).__name__)
			raise AuthError("Invalid or expired token") from None
		user_id = str(payload.get("sub") or "").strip()
		user = await self._store.get_user(user_id)
		if user is None:
			raise AuthError("User not found")
		if user.status in _BLOCKED_STATUSES:
			raise AuthError(f"Account {user.status.value}")
		return user.to_identity()


__all__ = ["IdentityResolver", "JWTIdentityResolver", "bearer_token"]
