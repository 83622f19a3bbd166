"""Lifecycle of one open conversation screen.

States run ``IDLE -> LOADING -> READY -> CLOSED``. A failed load returns to
``IDLE`` with nothing left subscribed so the caller can retry; ``CLOSED`` is
terminal and results of requests that finish after it are dropped. Sends
overlap ``READY``: each is tracked by its own optimistic entry.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta, tzinfo
from enum import Enum
from typing import AsyncIterator, List, Optional

import ulid

from campuslink.domain.chat.exceptions import ChatError, LoadError, SendError, SubscriptionError
from campuslink.domain.chat.models import MESSAGE_TYPE_TEXT, DateGroup, Message, Profile
from campuslink.domain.chat.presence import PresenceTracker
from campuslink.domain.chat.store import MessageStore, group_by_date
from campuslink.domain.chat.inbox import ChatListService
from campuslink.domain.chat.subscriptions import RealtimeSubscriptionManager, shared_manager
from campuslink.domain.common.clock import Clock, utcnow
from campuslink.domain.social.exceptions import ConnectionForbidden, ConnectionNotFound
from campuslink.domain.social.models import Connection, OtherParty, other_party
from campuslink.domain.social.service import ConnectionService
from campuslink.infra.gateway import GatewayError, PersistenceGateway
from campuslink.obs import metrics as obs_metrics
from campuslink.obs.logging import log_context

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
	IDLE = "idle"
	LOADING = "loading"
	READY = "ready"
	CLOSED = "closed"


async def fetch_profile(gateway: PersistenceGateway, user_id: str) -> Optional[Profile]:
	rows = await gateway.read("profiles", {"id": str(user_id)}, limit=1)
	return Profile.from_record(rows[0]) if rows else None


class ChatSessionController:
	"""One conversation screen for ``current_user_id``.

	Controllers for the same user and gateway share one subscription manager, so
	a second screen on a conversation replaces the first one's feeds. When a
	``chat_list`` is given its cached unread count for the conversation is zeroed
	once the history has loaded; without one the caller must call
	``ChatListService.mark_conversation_read`` itself.
	"""

	def __init__(
		self,
		gateway: PersistenceGateway,
		current_user_id: str,
		*,
		connections: Optional[ConnectionService] = None,
		subscriptions: Optional[RealtimeSubscriptionManager] = None,
		chat_list: Optional[ChatListService] = None,
		clock: Clock = utcnow,
		stale_after: Optional[timedelta] = None,
		typing_idle_seconds: Optional[float] = None,
	) -> None:
		self._gateway = gateway
		self.current_user_id = str(current_user_id)
		self._clock = clock
		self._connections = connections or ConnectionService(gateway, clock=clock)
		self._subscriptions = subscriptions or shared_manager(gateway, self.current_user_id)
		self._chat_list = chat_list
		self.tracker = PresenceTracker(
			gateway,
			self.current_user_id,
			clock=clock,
			stale_after=stale_after,
			typing_idle_seconds=typing_idle_seconds,
		)
		self.state = SessionState.IDLE
		self.error: Optional[ChatError] = None
		self.draft = ""
		self.connection: Optional[Connection] = None
		self.peer: Optional[OtherParty] = None
		self.peer_profile: Optional[Profile] = None
		self.store: Optional[MessageStore] = None
		self._connection_id: Optional[str] = None
		self._in_flight = 0

	@property
	def connection_id(self) -> Optional[str]:
		return self._connection_id

	@property
	def messages(self) -> List[Message]:
		return self.store.messages if self.store is not None else []

	@property
	def sending(self) -> bool:
		return self._in_flight > 0

	@property
	def peer_online(self) -> bool:
		return self.tracker.peer_online()

	@property
	def peer_typing(self) -> bool:
		return self._connection_id is not None and self.tracker.peer_typing_in(self._connection_id)

	def grouped(self, *, tz: Optional[tzinfo] = None) -> List[DateGroup]:
		return group_by_date(self.messages, tz=tz)

	def _abandoned(self) -> bool:
		return self.state is SessionState.CLOSED

	async def mount(self, connection_id: str) -> None:
		if self.state is not SessionState.IDLE:
			raise ChatError("invalid_state")
		connection_id = str(connection_id)
		self.state = SessionState.LOADING
		self.error = None
		self._connection_id = connection_id
		with log_context(user_id=self.current_user_id, connection_id=connection_id):
			try:
				await self._load(connection_id)
			except LoadError as exc:
				await self._release(connection_id)
				if not self._abandoned():
					self.state = SessionState.IDLE
					self.error = exc
				logger.error("chat session load failed", extra={"reason": exc.reason})
				raise
			if self._abandoned():
				await self._release(connection_id)
				return
			self.state = SessionState.READY
			if self._chat_list is not None:
				self._chat_list.mark_conversation_read(connection_id)
			logger.info("chat session ready", extra={"history": len(self.messages)})

	async def _load(self, connection_id: str) -> None:
		try:
			connection = await self._connections.ensure_chat_allowed(connection_id, self.current_user_id)
		except ConnectionNotFound as exc:
			raise LoadError("connection_not_found") from exc
		except ConnectionForbidden as exc:
			raise LoadError(exc.reason) from exc
		except GatewayError as exc:
			raise LoadError("connection_unavailable") from exc
		if self._abandoned():
			return
		party = other_party(connection, self.current_user_id)
		try:
			profile = await fetch_profile(self._gateway, party.user_id)
		except GatewayError as exc:
			raise LoadError("profile_unavailable") from exc
		if self._abandoned():
			return
		self.connection = connection
		self.peer = party
		self.peer_profile = profile

		# Feeds open before the history read so rows written during it still arrive.
		store = MessageStore(self._gateway, connection_id, self.current_user_id, clock=self._clock)
		self.tracker.watch(party.user_id)
		try:
			await self._subscriptions.open_for_conversation(
				connection_id,
				party.user_id,
				store=store,
				tracker=self.tracker,
				owner=self,
			)
		except SubscriptionError as exc:
			raise LoadError("subscription_failed") from exc
		if self._abandoned():
			return
		await store.load()
		if self._abandoned():
			return
		self.store = store

		await self.tracker.observe(party.user_id)
		await self.tracker.announce(connection_id)

	async def _release(self, connection_id: str) -> None:
		closed = await self._subscriptions.close(connection_id, owner=self)
		# A superseded screen leaves presence to the screen that replaced it
		if closed and self.tracker.current_chat_id is not None:
			await self.tracker.clear()

	async def send(self, text: Optional[str] = None) -> Optional[Message]:
		"""Send ``text`` (or the current draft); returns the confirmed message.

		Blank input is ignored. On a failed write the optimistic entry is removed,
		the draft is restored and ``SendError`` is raised.
		"""
		if self.state is not SessionState.READY or self.store is None:
			raise ChatError("not_ready")
		content = (self.draft if text is None else text).strip()
		if not content:
			return None
		store = self.store
		client_msg_id = str(ulid.new())
		temp_id = store.append_optimistic(content, self.current_user_id, client_msg_id=client_msg_id)
		self.draft = ""
		self._in_flight += 1
		obs_metrics.inc_chat_send()
		try:
			row = await self._gateway.insert(
				"messages",
				{
					"connection_id": store.connection_id,
					"sender_id": self.current_user_id,
					"content": content,
					"message_type": MESSAGE_TYPE_TEXT,
					"is_read": False,
					"client_msg_id": client_msg_id,
				},
			)
		except GatewayError as exc:
			self._in_flight -= 1
			if self._abandoned():
				return None
			store.rollback(temp_id)
			if not self.draft:
				self.draft = content
			obs_metrics.inc_chat_send_failure()
			logger.warning("message send failed", extra={"reason": exc.reason, "connection_id": store.connection_id})
			raise SendError(exc.reason, draft=content) from exc
		self._in_flight -= 1
		if self._abandoned():
			return None
		confirmed = Message.from_record(row)
		store.append(confirmed)
		await self.tracker.stop_typing()
		return confirmed

	async def keystroke(self, text: str) -> None:
		"""Update the compose box and forward typing activity to presence."""
		self.draft = text
		if self.state is not SessionState.READY:
			return
		if text.strip():
			await self.tracker.keystroke()
		else:
			await self.tracker.stop_typing()

	async def unmount(self) -> None:
		if self.state is SessionState.CLOSED:
			return
		self.state = SessionState.CLOSED
		if self._connection_id is not None:
			await self._release(self._connection_id)
		logger.info("chat session closed", extra={"connection_id": self._connection_id})

	async def on_unload(self) -> None:
		"""Best-effort offline write when the page goes away; may never reach the backend."""
		await self.tracker.clear(offline=True)


@asynccontextmanager
async def open_chat(
	gateway: PersistenceGateway,
	current_user_id: str,
	connection_id: str,
	**kwargs,
) -> AsyncIterator[ChatSessionController]:
	"""Mount a chat session for the duration of the block; always unmounts."""
	controller = ChatSessionController(gateway, current_user_id, **kwargs)
	try:
		await controller.mount(connection_id)
		yield controller
	finally:
		await controller.unmount()
