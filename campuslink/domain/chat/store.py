"""Ordered transcript for one open conversation.

The store merges two sources that can arrive in any order: optimistic entries
created when the local user presses send, and confirmed rows delivered by the
gateway (either as the insert's return value or through the change feed).
Confirmed rows are deduplicated by id; an optimistic entry is replaced in place
by its confirmed counterpart, matched by ``client_msg_id`` when both sides carry
one and by sender + content otherwise, preferring the most recent optimistic entry.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, tzinfo
from typing import Iterable, List, Optional, Sequence, Tuple

import ulid

from campuslink.domain.chat.exceptions import LoadError, ReadReceiptError
from campuslink.domain.chat.models import TEMP_ID_PREFIX, DateGroup, Message
from campuslink.domain.common.clock import Clock, utcnow
from campuslink.infra.gateway import GatewayError, NotEqual, PersistenceGateway
from campuslink.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

_TABLE = "messages"


def _order_key(message: Message) -> Tuple[datetime, str]:
	return (message.created_at, message.id)


class MessageStore:
	def __init__(
		self,
		gateway: PersistenceGateway,
		connection_id: str,
		current_user_id: str,
		*,
		clock: Clock = utcnow,
	) -> None:
		self._gateway = gateway
		self.connection_id = str(connection_id)
		self.current_user_id = str(current_user_id)
		self._clock = clock
		self._messages: List[Message] = []
		self._confirmed_ids: set[str] = set()

	@property
	def messages(self) -> List[Message]:
		return list(self._messages)

	@property
	def optimistic(self) -> List[Message]:
		return [m for m in self._messages if m.is_optimistic]

	@property
	def unread_count(self) -> int:
		return sum(
			1
			for m in self._messages
			if not m.is_optimistic and not m.is_read and m.sender_id != self.current_user_id
		)

	def __len__(self) -> int:
		return len(self._messages)

	def __contains__(self, message_id: object) -> bool:
		return any(m.id == message_id for m in self._messages)

	async def load(self) -> List[Message]:
		"""Fetch the full history in created_at order and mark the peer's messages read."""
		try:
			rows = await self._gateway.read(_TABLE, {"connection_id": self.connection_id}, order_by="created_at")
		except GatewayError as exc:
			logger.error("message history fetch failed", exc_info=True, extra={"reason": exc.reason})
			raise LoadError("history_unavailable") from exc
		fetched = [Message.from_record(row) for row in rows]
		confirmed = {m.id: m for m in self._messages if not m.is_optimistic}
		confirmed.update((m.id, m) for m in fetched)
		fetched_client_ids = {m.client_msg_id for m in fetched if m.client_msg_id}
		pending = [m for m in self.optimistic if m.client_msg_id not in fetched_client_ids]
		self._messages = sorted(confirmed.values(), key=_order_key) + pending
		self._confirmed_ids = set(confirmed)
		unread = [m.id for m in fetched if m.sender_id != self.current_user_id and not m.is_read]
		await self.mark_read(unread)
		return self.messages

	def append(self, message: Message) -> bool:
		"""Insert a confirmed message; returns False when it was a duplicate or foreign row."""
		if message.connection_id != self.connection_id:
			logger.warning("dropping message for another conversation", extra={"message_id": message.id})
			return False
		if message.id in self._confirmed_ids:
			return False
		message.is_optimistic = False
		index, match = self._find_optimistic(message)
		if index is not None:
			self._messages[index] = message
			obs_metrics.inc_chat_reconciled(match)
		else:
			self._messages.append(message)
		self._confirmed_ids.add(message.id)
		return True

	def _find_optimistic(self, message: Message) -> Tuple[Optional[int], str]:
		if message.client_msg_id:
			for idx in range(len(self._messages) - 1, -1, -1):
				candidate = self._messages[idx]
				if candidate.is_optimistic and candidate.client_msg_id == message.client_msg_id:
					return idx, "client_msg_id"
		for idx in range(len(self._messages) - 1, -1, -1):
			candidate = self._messages[idx]
			if not candidate.is_optimistic:
				continue
			# Two different correlation ids are two different sends
			if candidate.client_msg_id and message.client_msg_id:
				continue
			if (
				candidate.sender_id == message.sender_id
				and candidate.content == message.content
				and candidate.connection_id == message.connection_id
			):
				return idx, "content"
		return None, ""

	def append_optimistic(
		self,
		content: str,
		sender_id: Optional[str] = None,
		*,
		client_msg_id: Optional[str] = None,
	) -> str:
		"""Add a pending entry at the tail and return its temporary id."""
		temp_id = f"{TEMP_ID_PREFIX}{ulid.new()}"
		self._messages.append(
			Message(
				id=temp_id,
				connection_id=self.connection_id,
				sender_id=str(sender_id or self.current_user_id),
				content=content,
				created_at=self._clock(),
				is_read=False,
				client_msg_id=client_msg_id,
				is_optimistic=True,
			)
		)
		return temp_id

	def rollback(self, temp_id: str) -> bool:
		for idx, message in enumerate(self._messages):
			if message.id == temp_id and message.is_optimistic:
				del self._messages[idx]
				return True
		return False

	async def mark_read(self, message_ids: Iterable[str]) -> bool:
		"""Best-effort read receipt write; failures are logged, never raised."""
		ids = [mid for mid in dict.fromkeys(str(m) for m in message_ids) if not mid.startswith(TEMP_ID_PREFIX)]
		if not ids:
			return True
		try:
			await self._gateway.update(
				_TABLE,
				{"id": ids, "sender_id": NotEqual(self.current_user_id)},
				{"is_read": True},
			)
		except GatewayError as exc:
			error = ReadReceiptError(exc.reason)
			error.__cause__ = exc
			obs_metrics.inc_read_receipt("failed", len(ids))
			logger.warning("read receipt write failed", exc_info=error, extra={"count": len(ids)})
			return False
		obs_metrics.inc_read_receipt("ok", len(ids))
		wanted = set(ids)
		for message in self._messages:
			if message.id in wanted and message.sender_id != self.current_user_id:
				message.is_read = True
		return True


def group_by_date(messages: Sequence[Message], *, tz: Optional[tzinfo] = None) -> List[DateGroup]:
	"""Bucket messages by local calendar day, chronological within and across buckets."""
	groups: List[DateGroup] = []
	for message in sorted(messages, key=_order_key):
		day = message.created_at.astimezone(tz).date()
		if groups and groups[-1].day == day:
			groups[-1].messages.append(message)
		else:
			groups.append(DateGroup(day=day, messages=[message]))
	return groups


def format_date_header(day: date, today: date) -> str:
	if day == today:
		return "Today"
	if day == today - timedelta(days=1):
		return "Yesterday"
	return f"{day.strftime('%B')} {day.day}, {day.year}"


def format_message_time(moment: datetime, *, tz: Optional[tzinfo] = None) -> str:
	local = moment.astimezone(tz)
	hour = local.hour % 12 or 12
	return f"{hour}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'}"
