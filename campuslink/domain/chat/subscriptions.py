"""Change-feed subscriptions scoped to one open conversation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Dict, List, Optional, Tuple

from campuslink.domain.chat.exceptions import SubscriptionError
from campuslink.domain.chat.models import Message
from campuslink.domain.chat.presence import PresenceTracker
from campuslink.domain.chat.store import MessageStore
from campuslink.infra.gateway import EVENT_TYPES, INSERT, ChangeEvent, GatewayError, PersistenceGateway, Subscription
from campuslink.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


@dataclass
class ConversationSubscriptions:
	connection_id: str
	peer_user_id: str
	store: MessageStore
	tracker: PresenceTracker
	owner: Optional[object] = None
	messages: Optional[Subscription] = None
	presence: Optional[Subscription] = None
	closed: bool = False


class RealtimeSubscriptionManager:
	"""Holds at most one live subscription pair per conversation.

	Opening a conversation that is already open tears the previous pair down
	first, so navigating between chats without an unmount never leaves two
	feeds delivering into the same transcript.
	"""

	def __init__(self, gateway: PersistenceGateway, current_user_id: str) -> None:
		self._gateway = gateway
		self.current_user_id = str(current_user_id)
		self._active: Dict[str, ConversationSubscriptions] = {}
		self._lock = asyncio.Lock()

	def is_open(self, connection_id: str) -> bool:
		return str(connection_id) in self._active

	@property
	def open_conversations(self) -> List[str]:
		return list(self._active)

	async def open_for_conversation(
		self,
		connection_id: str,
		peer_user_id: str,
		*,
		store: MessageStore,
		tracker: PresenceTracker,
		owner: Optional[object] = None,
	) -> ConversationSubscriptions:
		connection_id = str(connection_id)
		async with self._lock:
			await self._close_locked(connection_id)
			bundle = ConversationSubscriptions(
				connection_id=connection_id,
				peer_user_id=str(peer_user_id),
				store=store,
				tracker=tracker,
				owner=owner,
			)
			try:
				bundle.messages = await self._gateway.subscribe(
					"messages",
					{"connection_id": connection_id},
					(INSERT,),
					partial(self._on_message, bundle),
				)
				bundle.presence = await self._gateway.subscribe(
					"user_presence",
					{"user_id": bundle.peer_user_id},
					EVENT_TYPES,
					partial(self._on_presence, bundle),
				)
			except GatewayError as exc:
				await self._teardown(bundle)
				logger.warning("conversation subscribe failed", exc_info=True, extra={"reason": exc.reason})
				raise SubscriptionError(exc.reason) from exc
			self._active[connection_id] = bundle
			obs_metrics.subscription_opened()
			return bundle

	async def close(self, connection_id: str, *, owner: Optional[object] = None) -> bool:
		"""Tear down a conversation's subscriptions; a no-op when none are open.

		With ``owner`` only a pair opened by that owner is closed, so a screen
		that was superseded cannot tear down its replacement's feeds.
		"""
		connection_id = str(connection_id)
		async with self._lock:
			bundle = self._active.get(connection_id)
			if bundle is not None and owner is not None and bundle.owner is not owner:
				return False
			return await self._close_locked(connection_id)

	async def close_all(self) -> None:
		async with self._lock:
			for connection_id in list(self._active):
				await self._close_locked(connection_id)

	async def _close_locked(self, connection_id: str) -> bool:
		bundle = self._active.pop(connection_id, None)
		if bundle is None:
			return False
		await self._teardown(bundle)
		obs_metrics.subscription_closed()
		return True

	async def _teardown(self, bundle: ConversationSubscriptions) -> None:
		bundle.closed = True
		for subscription in (bundle.messages, bundle.presence):
			if subscription is None:
				continue
			try:
				await subscription.close()
			except Exception:  # noqa: BLE001 - keep closing the remaining feeds
				logger.warning("subscription close failed", exc_info=True)

	async def _on_message(self, bundle: ConversationSubscriptions, event: ChangeEvent) -> None:
		if bundle.closed:
			return
		message = Message.from_record(event.row)
		if not bundle.store.append(message):
			return
		if message.sender_id != self.current_user_id and not message.is_read:
			await bundle.store.mark_read([message.id])

	async def _on_presence(self, bundle: ConversationSubscriptions, event: ChangeEvent) -> None:
		if bundle.closed:
			return
		bundle.tracker.apply_peer_row(event.row)


# One manager per (gateway, user) for the whole process; every screen for the
# same conversation shares it, so at most one subscription pair is ever live.
_managers: Dict[Tuple[PersistenceGateway, str], RealtimeSubscriptionManager] = {}


def shared_manager(gateway: PersistenceGateway, current_user_id: str) -> RealtimeSubscriptionManager:
	key = (gateway, str(current_user_id))
	manager = _managers.get(key)
	if manager is None:
		manager = RealtimeSubscriptionManager(gateway, current_user_id)
		_managers[key] = manager
	return manager
