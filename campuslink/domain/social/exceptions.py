"""Domain-level exceptions for connection requests."""

from __future__ import annotations


class SocialError(Exception):
	"""Base class for connection workflow errors."""

	reason: str = "unknown"

	def __init__(self, reason: str | None = None) -> None:
		super().__init__(reason or self.reason)
		if reason:
			self.reason = reason


class ConnectionNotFound(SocialError):
	reason = "not_found"


class ConnectionForbidden(SocialError):
	reason = "forbidden"


class ConnectionConflict(SocialError):
	reason = "conflict"


class ConnectionSelfError(ConnectionConflict):
	reason = "self_request"


class ConnectionAlreadyPending(ConnectionConflict):
	reason = "already_pending"


class ConnectionAlreadyAccepted(ConnectionConflict):
	reason = "already_connected"


class ConnectionRejectedError(ConnectionConflict):
	reason = "previously_rejected"


class ConnectionGone(SocialError):
	"""Raised when a transition is attempted from a terminal status."""

	reason = "not_pending"
