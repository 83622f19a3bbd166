"""Persistence gateway contract consumed by the chat & presence core.

The core never talks to a database or a socket directly. It reads, writes and
subscribes to row changes through a ``PersistenceGateway``; the Postgres gateway
in ``campuslink.infra.postgres`` is the production implementation and
``InMemoryGateway`` below backs tests and local development.

Filters are mappings of column to value. A plain value means equality, a
list/tuple/set/frozenset means membership and ``NotEqual`` negates equality.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Collection, Dict, Iterable, List, Mapping, Optional, Protocol

import ulid

from campuslink.domain.common.clock import Clock, utcnow

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
Filters = Mapping[str, Any]

INSERT = "insert"
UPDATE = "update"
EVENT_TYPES = (INSERT, UPDATE)

# Tables the core reads or writes, with the column used for upserts.
TABLE_KEYS: Dict[str, str] = {
	"connections": "id",
	"messages": "id",
	"user_presence": "user_id",
	"profiles": "id",
}

TIMESTAMP_COLUMNS = frozenset({"created_at", "updated_at", "last_seen"})


class GatewayError(Exception):
	"""Raised when a gateway read, write or subscription fails."""

	reason: str = "gateway_error"

	def __init__(self, reason: str | None = None) -> None:
		super().__init__(reason or self.reason)
		if reason:
			self.reason = reason


@dataclass(frozen=True, slots=True)
class NotEqual:
	value: Any


@dataclass(frozen=True, slots=True)
class ChangeEvent:
	table: str
	type: str
	row: Row


ChangeCallback = Callable[[ChangeEvent], Awaitable[None]]


class Subscription(Protocol):
	@property
	def closed(self) -> bool:
		...

	async def close(self) -> None:
		...


class PersistenceGateway(Protocol):
	async def read(
		self,
		table: str,
		filters: Filters,
		*,
		order_by: Optional[str] = None,
		descending: bool = False,
		limit: Optional[int] = None,
	) -> List[Row]:
		...

	async def count(self, table: str, filters: Filters) -> int:
		...

	async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
		...

	async def update(self, table: str, filters: Filters, patch: Mapping[str, Any]) -> List[Row]:
		...

	async def upsert(self, table: str, row: Mapping[str, Any]) -> Row:
		...

	async def subscribe(
		self,
		table: str,
		filters: Filters,
		event_types: Collection[str],
		callback: ChangeCallback,
	) -> Subscription:
		...


def ensure_table(table: str) -> str:
	if table not in TABLE_KEYS:
		raise GatewayError(f"unknown_table:{table}")
	return table


def matches(row: Mapping[str, Any], filters: Filters) -> bool:
	"""Evaluate a filter mapping against a row the way the gateways do."""
	for column, expected in filters.items():
		actual = row.get(column)
		if isinstance(expected, NotEqual):
			if actual == expected.value:
				return False
		elif isinstance(expected, (list, tuple, set, frozenset)):
			if actual not in expected:
				return False
		elif actual != expected:
			return False
	return True


async def deliver(callback: ChangeCallback, event: ChangeEvent) -> None:
	"""Run a subscriber callback, logging instead of propagating its failures."""
	try:
		await callback(event)
	except Exception:  # noqa: BLE001 - one subscriber must not break the feed
		logger.warning(
			"change subscriber failed",
			exc_info=True,
			extra={"table": event.table, "event_type": event.type},
		)


class _MemorySubscription:
	def __init__(
		self,
		owner: "InMemoryGateway",
		table: str,
		filters: Filters,
		event_types: Collection[str],
		callback: ChangeCallback,
	) -> None:
		self._owner = owner
		self.table = table
		self.filters = dict(filters)
		self.event_types = frozenset(event_types)
		self.callback = callback
		self._closed = False

	@property
	def closed(self) -> bool:
		return self._closed

	def wants(self, event: ChangeEvent) -> bool:
		return (
			not self._closed
			and event.table == self.table
			and event.type in self.event_types
			and matches(event.row, self.filters)
		)

	async def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		self._owner._detach(self)


class InMemoryGateway:
	"""Process-local gateway with synchronous change delivery.

	Change events are delivered to subscribers after the write is applied and
	before the write call returns, in subscription order.
	"""

	def __init__(self, *, clock: Clock = utcnow) -> None:
		self._clock = clock
		self._tables: Dict[str, List[Row]] = {name: [] for name in TABLE_KEYS}
		self._subscriptions: List[_MemorySubscription] = []
		self._last_created_at = None

	def _rows(self, table: str) -> List[Row]:
		return self._tables[ensure_table(table)]

	def _stamp(self):
		now = self._clock()
		if self._last_created_at is not None and now <= self._last_created_at:
			now = self._last_created_at + timedelta(microseconds=1)
		self._last_created_at = now
		return now

	def seed(self, table: str, rows: Iterable[Mapping[str, Any]]) -> List[Row]:
		"""Load rows without emitting change events."""
		stored = []
		for row in rows:
			record = dict(row)
			record.setdefault(TABLE_KEYS[table], str(ulid.new()))
			self._rows(table).append(record)
			stored.append(copy.deepcopy(record))
		return stored

	@property
	def subscription_count(self) -> int:
		return len(self._subscriptions)

	async def read(
		self,
		table: str,
		filters: Filters,
		*,
		order_by: Optional[str] = None,
		descending: bool = False,
		limit: Optional[int] = None,
	) -> List[Row]:
		rows = [copy.deepcopy(row) for row in self._rows(table) if matches(row, filters)]
		if order_by:
			rows.sort(key=lambda row: row.get(order_by), reverse=descending)
		if limit is not None:
			rows = rows[:limit]
		return rows

	async def count(self, table: str, filters: Filters) -> int:
		return sum(1 for row in self._rows(table) if matches(row, filters))

	async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
		rows = self._rows(table)
		key = TABLE_KEYS[table]
		record = dict(row)
		record.setdefault(key, str(ulid.new()))
		if any(existing.get(key) == record[key] for existing in rows):
			raise GatewayError("duplicate_key")
		now = self._stamp()
		record.setdefault("created_at", now)
		if table == "connections":
			record.setdefault("updated_at", now)
		rows.append(record)
		await self._emit(ChangeEvent(table=table, type=INSERT, row=copy.deepcopy(record)))
		return copy.deepcopy(record)

	async def update(self, table: str, filters: Filters, patch: Mapping[str, Any]) -> List[Row]:
		updated: List[Row] = []
		for record in self._rows(table):
			if matches(record, filters):
				record.update(patch)
				updated.append(copy.deepcopy(record))
		for record in updated:
			await self._emit(ChangeEvent(table=table, type=UPDATE, row=copy.deepcopy(record)))
		return updated

	async def upsert(self, table: str, row: Mapping[str, Any]) -> Row:
		key = TABLE_KEYS[table]
		if key not in row:
			raise GatewayError("missing_key")
		for record in self._rows(table):
			if record.get(key) == row[key]:
				record.update(row)
				await self._emit(ChangeEvent(table=table, type=UPDATE, row=copy.deepcopy(record)))
				return copy.deepcopy(record)
		record = dict(row)
		self._rows(table).append(record)
		await self._emit(ChangeEvent(table=table, type=INSERT, row=copy.deepcopy(record)))
		return copy.deepcopy(record)

	async def subscribe(
		self,
		table: str,
		filters: Filters,
		event_types: Collection[str],
		callback: ChangeCallback,
	) -> _MemorySubscription:
		ensure_table(table)
		unknown = set(event_types) - set(EVENT_TYPES)
		if unknown:
			raise GatewayError(f"unknown_event_types:{','.join(sorted(unknown))}")
		subscription = _MemorySubscription(self, table, filters, event_types, callback)
		self._subscriptions.append(subscription)
		return subscription

	def _detach(self, subscription: _MemorySubscription) -> None:
		try:
			self._subscriptions.remove(subscription)
		except ValueError:
			return

	async def _emit(self, event: ChangeEvent) -> None:
		for subscription in list(self._subscriptions):
			if subscription.wants(event):
				await deliver(subscription.callback, event)
		await asyncio.sleep(0)
