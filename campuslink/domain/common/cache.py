"""Time-boxed caches for screen-level collections (discovery, feed, chats).

Each logical resource owns its own ``ResourceCache`` so invalidating one never
touches another. Staleness is a pure function of the entry, the ttl and an
injected ``now``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Generic, Hashable, Optional, TypeVar

from campuslink.domain.common.clock import Clock, utcnow
from campuslink.settings import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
	value: T
	fetched_at: datetime
	key: Optional[Hashable] = None


def is_stale(
	entry: Optional[CacheEntry],
	ttl: timedelta,
	now: datetime,
	*,
	key: Optional[Hashable] = None,
) -> bool:
	"""Return True when the entry is missing, expired or was fetched for another key."""
	if entry is None:
		return True
	if key is not None and entry.key != key:
		return True
	return now - entry.fetched_at > ttl


class ResourceCache(Generic[T]):
	"""Single-slot cache for one logical resource."""

	def __init__(self, name: str, *, ttl: Optional[timedelta] = None, clock: Clock = utcnow) -> None:
		self.name = name
		self.ttl = ttl if ttl is not None else timedelta(seconds=settings.data_cache_ttl_seconds)
		self._clock = clock
		self._entry: Optional[CacheEntry[T]] = None
		self._lock = asyncio.Lock()

	@property
	def entry(self) -> Optional[CacheEntry[T]]:
		return self._entry

	def get(self, *, key: Optional[Hashable] = None) -> Optional[T]:
		if is_stale(self._entry, self.ttl, self._clock(), key=key):
			return None
		assert self._entry is not None
		return self._entry.value

	def set(self, value: T, *, key: Optional[Hashable] = None) -> CacheEntry[T]:
		self._entry = CacheEntry(value=value, fetched_at=self._clock(), key=key)
		return self._entry

	def update(self, mutate: Callable[[T], T]) -> None:
		"""Apply a local mutation without refreshing ``fetched_at``."""
		if self._entry is None:
			return
		self._entry = CacheEntry(
			value=mutate(self._entry.value),
			fetched_at=self._entry.fetched_at,
			key=self._entry.key,
		)

	def invalidate(self) -> None:
		self._entry = None

	async def get_or_fetch(
		self,
		fetch: Callable[[], Awaitable[T]],
		*,
		key: Optional[Hashable] = None,
		force: bool = False,
	) -> T:
		async with self._lock:
			if not force:
				cached = self.get(key=key)
				if cached is not None:
					return cached
			logger.debug("cache refresh", extra={"cache": self.name})
			value = await fetch()
			self.set(value, key=key)
			return value
