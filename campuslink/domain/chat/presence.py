"""Own-presence publishing and peer-presence interpretation.

Each user's presence row has exactly one writer, that user's own client, and
any number of readers. Rows are never expired by the backend, so "online" is
derived on read from ``is_online`` plus the age of ``last_seen``. There is no
reliable disconnect signal; a closed tab simply ages out of the window.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Mapping, Optional

from campuslink.domain.chat.exceptions import PresenceWriteError
from campuslink.domain.chat.models import UserPresence
from campuslink.domain.common.clock import Clock, utcnow
from campuslink.infra.gateway import GatewayError, PersistenceGateway
from campuslink.obs import metrics as obs_metrics
from campuslink.settings import settings

logger = logging.getLogger(__name__)

_TABLE = "user_presence"

PeerListener = Callable[[UserPresence], None]


def is_online(presence: Optional[UserPresence], now: datetime, *, stale_after: timedelta) -> bool:
	if presence is None or not presence.is_online:
		return False
	return now - presence.last_seen < stale_after


def is_typing_in(presence: Optional[UserPresence], connection_id: str) -> bool:
	"""Typing counts only for the conversation the peer currently has open."""
	if presence is None or not presence.is_typing:
		return False
	return presence.current_chat_id == str(connection_id)


class PresenceTracker:
	def __init__(
		self,
		gateway: PersistenceGateway,
		user_id: str,
		*,
		clock: Clock = utcnow,
		stale_after: Optional[timedelta] = None,
		typing_idle_seconds: Optional[float] = None,
	) -> None:
		self._gateway = gateway
		self.user_id = str(user_id)
		self._clock = clock
		self.stale_after = stale_after if stale_after is not None else timedelta(seconds=settings.presence_stale_seconds)
		self.typing_idle_seconds = (
			typing_idle_seconds if typing_idle_seconds is not None else settings.typing_idle_seconds
		)
		self._current_chat_id: Optional[str] = None
		self._is_typing = False
		self._last_seen: Optional[datetime] = None
		self._idle_task: Optional[asyncio.Task] = None
		self._peer_id: Optional[str] = None
		self._peer: Optional[UserPresence] = None
		self._listeners: List[PeerListener] = []

	@property
	def is_typing(self) -> bool:
		return self._is_typing

	@property
	def current_chat_id(self) -> Optional[str]:
		return self._current_chat_id

	@property
	def peer(self) -> Optional[UserPresence]:
		return self._peer

	@property
	def peer_id(self) -> Optional[str]:
		return self._peer_id

	# -- own presence -------------------------------------------------

	def _stamp(self) -> datetime:
		now = self._clock()
		if self._last_seen is not None and now < self._last_seen:
			now = self._last_seen
		self._last_seen = now
		return now

	async def _write(self, action: str, *, is_online: bool = True) -> bool:
		row = {
			"user_id": self.user_id,
			"is_online": is_online,
			"current_chat_id": self._current_chat_id,
			"is_typing": self._is_typing,
			"last_seen": self._stamp(),
		}
		try:
			await self._gateway.upsert(_TABLE, row)
		except GatewayError as exc:
			error = PresenceWriteError(exc.reason)
			error.__cause__ = exc
			obs_metrics.inc_presence_write(action, "failed")
			logger.warning("presence write failed", exc_info=error, extra={"action": action})
			return False
		obs_metrics.inc_presence_write(action, "ok")
		return True

	async def announce(self, connection_id: str) -> bool:
		self._current_chat_id = str(connection_id)
		self._is_typing = False
		return await self._write("announce")

	async def set_typing(self, is_typing: bool) -> bool:
		"""Write the typing flag when it changes; a failed write leaves the old state."""
		if is_typing == self._is_typing:
			return True
		self._is_typing = is_typing
		ok = await self._write("typing")
		if not ok:
			self._is_typing = not is_typing
		return ok

	async def keystroke(self) -> None:
		"""Mark typing immediately and clear it after the idle window without keystrokes."""
		self._restart_idle_timer()
		if not self._is_typing:
			await self.set_typing(True)

	async def stop_typing(self) -> None:
		self._cancel_idle_timer()
		await self.set_typing(False)

	async def clear(self, *, offline: bool = False) -> bool:
		self._cancel_idle_timer()
		self._current_chat_id = None
		self._is_typing = False
		return await self._write("clear", is_online=not offline)

	def _restart_idle_timer(self) -> None:
		self._cancel_idle_timer()
		self._idle_task = asyncio.create_task(self._idle_clear(), name=f"typing-idle:{self.user_id}")

	def _cancel_idle_timer(self) -> None:
		task = self._idle_task
		self._idle_task = None
		if task is not None and not task.done():
			task.cancel()

	async def _idle_clear(self) -> None:
		await asyncio.sleep(self.typing_idle_seconds)
		self._idle_task = None
		await self.set_typing(False)

	# -- peer presence ------------------------------------------------

	def watch(self, peer_user_id: str) -> None:
		"""Accept change events for ``peer_user_id``; the mirror resets only when the peer changes."""
		peer_user_id = str(peer_user_id)
		if peer_user_id != self._peer_id:
			self._peer_id = peer_user_id
			self._peer = None

	async def observe(self, peer_user_id: str) -> Optional[UserPresence]:
		"""Start mirroring ``peer_user_id``; seeds the mirror from the current row.

		A row already delivered live for the same peer is kept when the stored
		row is older.
		"""
		self.watch(peer_user_id)
		try:
			rows = await self._gateway.read(_TABLE, {"user_id": self._peer_id}, limit=1)
		except GatewayError:
			logger.warning("peer presence fetch failed", exc_info=True, extra={"peer_id": self._peer_id})
			return None
		if rows:
			self.apply_peer_row(rows[0])
		return self._peer

	def apply_peer_row(self, row: Mapping) -> bool:
		"""Update the mirror from a change event; older or foreign rows are ignored."""
		presence = UserPresence.from_record(row)
		if presence.user_id != self._peer_id:
			return False
		if self._peer is not None and presence.last_seen < self._peer.last_seen:
			return False
		self._peer = presence
		for listener in list(self._listeners):
			listener(presence)
		return True

	def on_peer_change(self, listener: PeerListener) -> Callable[[], None]:
		self._listeners.append(listener)

		def _remove() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return _remove

	def peer_online(self, now: Optional[datetime] = None) -> bool:
		return is_online(self._peer, now or self._clock(), stale_after=self.stale_after)

	def peer_typing_in(self, connection_id: str) -> bool:
		return is_typing_in(self._peer, connection_id)
