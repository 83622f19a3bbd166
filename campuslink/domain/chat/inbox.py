"""Chat list: accepted conversations with last message and unread count, plus incoming requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from campuslink.domain.chat.exceptions import LoadError
from campuslink.domain.chat.models import Message, Profile
from campuslink.domain.common.cache import ResourceCache
from campuslink.domain.common.clock import Clock, utcnow
from campuslink.domain.social.models import Connection, ConnectionStatus, OtherParty, other_party
from campuslink.domain.social.service import ConnectionService
from campuslink.infra.gateway import GatewayError, NotEqual, PersistenceGateway

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(slots=True)
class ConversationSummary:
	connection: Connection
	other: OtherParty
	profile: Optional[Profile] = None
	last_message: Optional[Message] = None
	unread_count: int = 0

	@property
	def last_activity_at(self) -> Optional[datetime]:
		if self.last_message is not None:
			return self.last_message.created_at
		return self.connection.last_activity_at


@dataclass(slots=True)
class ChatList:
	conversations: List[ConversationSummary] = field(default_factory=list)
	pending_requests: List[ConversationSummary] = field(default_factory=list)

	@property
	def total_unread(self) -> int:
		return sum(summary.unread_count for summary in self.conversations)


class ChatListService:
	def __init__(
		self,
		gateway: PersistenceGateway,
		*,
		connections: Optional[ConnectionService] = None,
		cache: Optional[ResourceCache[ChatList]] = None,
		clock: Clock = utcnow,
	) -> None:
		self._gateway = gateway
		self._connections = connections or ConnectionService(gateway, clock=clock)
		self.cache: ResourceCache[ChatList] = cache or ResourceCache("chats", clock=clock)

	async def load(self, user_id: str, *, force: bool = False) -> ChatList:
		user_id = str(user_id)
		return await self.cache.get_or_fetch(lambda: self._fetch(user_id), key=user_id, force=force)

	def invalidate(self) -> None:
		self.cache.invalidate()

	def mark_conversation_read(self, connection_id: str) -> None:
		"""Zero a cached unread badge after the conversation was opened."""
		connection_id = str(connection_id)

		def _zero(chat_list: ChatList) -> ChatList:
			return ChatList(
				conversations=[
					replace(summary, unread_count=0) if summary.connection.id == connection_id else summary
					for summary in chat_list.conversations
				],
				pending_requests=list(chat_list.pending_requests),
			)

		self.cache.update(_zero)

	async def _fetch(self, user_id: str) -> ChatList:
		try:
			return await self._build(user_id)
		except GatewayError as exc:
			logger.error("chat list fetch failed", exc_info=True, extra={"reason": exc.reason})
			raise LoadError("chat_list_unavailable") from exc

	async def _build(self, user_id: str) -> ChatList:
		connections = await self._connections.list_for_user(user_id)
		conversations: List[ConversationSummary] = []
		pending: List[ConversationSummary] = []
		for connection in connections:
			summary = ConversationSummary(connection=connection, other=other_party(connection, user_id))
			if connection.status is ConnectionStatus.ACCEPTED:
				latest = await self._gateway.read(
					"messages",
					{"connection_id": connection.id},
					order_by="created_at",
					descending=True,
					limit=1,
				)
				summary.last_message = Message.from_record(latest[0]) if latest else None
				summary.unread_count = await self._gateway.count(
					"messages",
					{"connection_id": connection.id, "is_read": False, "sender_id": NotEqual(user_id)},
				)
				conversations.append(summary)
			elif connection.status is ConnectionStatus.PENDING and connection.receiver_id == user_id:
				pending.append(summary)

		profiles = await self._profiles({s.other.user_id for s in [*conversations, *pending]})
		for summary in [*conversations, *pending]:
			summary.profile = profiles.get(summary.other.user_id)

		conversations.sort(key=lambda s: s.last_activity_at or _EPOCH, reverse=True)
		pending.sort(key=lambda s: s.connection.created_at or _EPOCH, reverse=True)
		return ChatList(conversations=conversations, pending_requests=pending)

	async def _profiles(self, user_ids: set[str]) -> Dict[str, Profile]:
		if not user_ids:
			return {}
		rows = await self._gateway.read("profiles", {"id": sorted(user_ids)})
		return {str(row["id"]): Profile.from_record(row) for row in rows}
