"""Row-change feed on top of Redis Streams.

Every write published through ``RedisChangeFeed`` is appended to one stream per
keyed column of the row (``{prefix}:{table}:{column}:{value}``). A subscription
filtered on a keyed column tails exactly that stream with blocking XREAD, so
events within one filtered stream arrive in the order they were published.
Filter columns other than the keyed one are applied after decoding.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from datetime import datetime
from typing import Any, Collection, Dict, Mapping, Optional, Tuple

from campuslink.infra.gateway import (
	EVENT_TYPES,
	TIMESTAMP_COLUMNS,
	ChangeCallback,
	ChangeEvent,
	Filters,
	GatewayError,
	NotEqual,
	Row,
	deliver,
	ensure_table,
	matches,
)
from campuslink.infra.redis import RedisProxy, redis_client
from campuslink.obs import metrics as obs_metrics
from campuslink.settings import settings

logger = logging.getLogger(__name__)

FEED_KEYS: Dict[str, Tuple[str, ...]] = {
	"messages": ("connection_id",),
	"user_presence": ("user_id",),
	"connections": ("requester_id", "receiver_id"),
	"profiles": ("id",),
}

_RETRY_DELAY_SECONDS = 1.0
_READ_BATCH = 100


def stream_key(table: str, column: str, value: Any, *, prefix: Optional[str] = None) -> str:
	return f"{prefix or settings.feed_stream_prefix}:{table}:{column}:{value}"


def _json_default(value: Any) -> Any:
	if isinstance(value, datetime):
		return value.isoformat()
	return str(value)


def encode_row(row: Mapping[str, Any]) -> str:
	return json.dumps(dict(row), default=_json_default, separators=(",", ":"))


def decode_row(raw: str) -> Row:
	row: Row = json.loads(raw)
	for column in TIMESTAMP_COLUMNS:
		value = row.get(column)
		if isinstance(value, str):
			row[column] = datetime.fromisoformat(value)
	return row


def _text(value: Any) -> str:
	return value.decode() if isinstance(value, bytes) else str(value)


def _decode_event(fields: Mapping[Any, Any]) -> ChangeEvent:
	decoded = {_text(k): _text(v) for k, v in fields.items()}
	return ChangeEvent(table=decoded["table"], type=decoded["type"], row=decode_row(decoded["row"]))


class StreamSubscription:
	"""Background XREAD loop delivering one stream's events to a callback."""

	def __init__(
		self,
		redis: RedisProxy,
		stream: str,
		*,
		table: str,
		filters: Filters,
		event_types: Collection[str],
		callback: ChangeCallback,
		start_id: str,
		block_ms: int,
	) -> None:
		self._redis = redis
		self.stream = stream
		self.table = table
		self.filters = dict(filters)
		self.event_types = frozenset(event_types)
		self.callback = callback
		self.last_id = start_id
		self.block_ms = block_ms
		self._task: Optional[asyncio.Task] = None
		self._closed = False

	@property
	def closed(self) -> bool:
		return self._closed

	def start(self) -> None:
		if self._task is None:
			self._task = asyncio.create_task(self._run(), name=f"feed:{self.stream}")

	async def _run(self) -> None:
		while not self._closed:
			try:
				batches = await self._redis.xread({self.stream: self.last_id}, count=_READ_BATCH, block=self.block_ms)
			except asyncio.CancelledError:
				raise
			except Exception:  # noqa: BLE001 - keep tailing after transport errors
				logger.warning("feed read failed", exc_info=True, extra={"stream": self.stream})
				await asyncio.sleep(_RETRY_DELAY_SECONDS)
				continue
			if not batches:
				await asyncio.sleep(0)
				continue
			for _stream, entries in batches:
				for entry_id, fields in entries:
					self.last_id = _text(entry_id)
					try:
						event = _decode_event(fields)
					except (KeyError, ValueError):
						logger.warning("undecodable feed entry", extra={"stream": self.stream, "entry_id": self.last_id})
						continue
					if self._closed:
						return
					if event.type not in self.event_types or not matches(event.row, self.filters):
						continue
					obs_metrics.feed_event(event.table, event.type)
					await deliver(self.callback, event)

	async def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		task = self._task
		if task:
			task.cancel()
			with suppress(asyncio.CancelledError):
				await task


class RedisChangeFeed:
	"""Publishes row changes to Redis Streams and hands out stream subscriptions."""

	def __init__(
		self,
		redis: Optional[RedisProxy] = None,
		*,
		prefix: Optional[str] = None,
		maxlen: Optional[int] = None,
		block_ms: Optional[int] = None,
	) -> None:
		self._redis = redis or redis_client
		self.prefix = prefix or settings.feed_stream_prefix
		self.maxlen = maxlen or settings.feed_stream_maxlen
		self.block_ms = block_ms or settings.feed_block_ms

	async def publish(self, table: str, event_type: str, row: Mapping[str, Any]) -> None:
		payload = {"table": table, "type": event_type, "row": encode_row(row)}
		for column in FEED_KEYS[ensure_table(table)]:
			value = row.get(column)
			if value is None:
				continue
			key = stream_key(table, column, value, prefix=self.prefix)
			await self._redis.xadd_capped(key, payload, maxlen=self.maxlen)

	async def subscribe(
		self,
		table: str,
		filters: Filters,
		event_types: Collection[str],
		callback: ChangeCallback,
	) -> StreamSubscription:
		ensure_table(table)
		unknown = set(event_types) - set(EVENT_TYPES)
		if unknown:
			raise GatewayError(f"unknown_event_types:{','.join(sorted(unknown))}")
		column = next(
			(col for col in FEED_KEYS[table] if col in filters and not isinstance(filters[col], (list, tuple, set, frozenset, NotEqual))),
			None,
		)
		if column is None:
			raise GatewayError("unkeyed_filter")
		stream = stream_key(table, column, filters[column], prefix=self.prefix)
		try:
			start_id = await self._redis.last_stream_id(stream)
		except Exception as exc:  # noqa: BLE001 - surface as a gateway failure
			raise GatewayError("feed_unavailable") from exc
		subscription = StreamSubscription(
			self._redis,
			stream,
			table=table,
			filters=filters,
			event_types=event_types,
			callback=callback,
			start_id=start_id,
			block_ms=self.block_ms,
		)
		subscription.start()
		return subscription
