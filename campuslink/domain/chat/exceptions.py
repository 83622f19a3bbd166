"""Chat & presence error taxonomy."""

from __future__ import annotations


class ChatError(Exception):
	"""Base class for chat core errors."""

	reason: str = "unknown"

	def __init__(self, reason: str | None = None) -> None:
		super().__init__(reason or self.reason)
		if reason:
			self.reason = reason


class LoadError(ChatError):
	"""History, connection or profile fetch failed; the screen stays retryable."""

	reason = "load_failed"


class SendError(ChatError):
	"""A message write failed after the optimistic entry was rolled back."""

	reason = "send_failed"

	def __init__(self, reason: str | None = None, *, draft: str = "") -> None:
		super().__init__(reason)
		self.draft = draft


class PresenceWriteError(ChatError):
	reason = "presence_write_failed"


class ReadReceiptError(ChatError):
	reason = "read_receipt_failed"


class SubscriptionError(ChatError):
	reason = "subscription_failed"
