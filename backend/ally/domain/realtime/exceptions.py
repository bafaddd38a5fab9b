"""Error taxonomy for the realtime layer.

Each error is scoped to one connection or one inbound event; none of them is
fatal to the process.
"""

from __future__ import annotations


class RealtimeError(Exception):
	"""Base class for realtime errors reported back to the originating connection."""

	code: str = "realtime_error"
	message: str = "Request failed"

	def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
		super().__init__(message or self.message)
		if message:
			self.message = message
		if code:
			self.code = code


class AuthError(RealtimeError):
	"""Bad, missing or expired credential; the connection is refused."""

	code = "unauthorized"
	message = "Authentication failed"


class NotFoundError(RealtimeError):
	code = "not_found"
	message = "Not found"


class ForbiddenError(RealtimeError):
	"""Action attempted without the required room or role membership."""

	code = "forbidden"
	message = "Not allowed"


class ValidationError(RealtimeError):
	code = "invalid_payload"
	message = "Invalid payload"


class TransientStoreError(RealtimeError):
	"""Durable store call failed mid-operation."""

	code = "store_unavailable"
	message = "Storage temporarily unavailable"


class ConnectionLimitError(RealtimeError):
	code = "too_many_connections"
	message = "Too many simultaneous connections"


class RateLimitedError(RealtimeError):
	code = "rate_limited"
	message = "Too many requests"
