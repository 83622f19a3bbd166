"""AsyncPG pool management and the Postgres-backed persistence gateway."""

from __future__ import annotations

import logging
import re
from typing import Any, Collection, List, Mapping, Optional, Tuple

import asyncpg

from campuslink.infra.feed import RedisChangeFeed, StreamSubscription
from campuslink.infra.gateway import (
	INSERT,
	TABLE_KEYS,
	UPDATE,
	ChangeCallback,
	Filters,
	GatewayError,
	NotEqual,
	Row,
	ensure_table,
)
from campuslink.obs import metrics as obs_metrics
from campuslink.settings import settings

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.pool.Pool] = None

_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		# Force 127.0.0.1 instead of localhost to avoid IPv6 resolution issues
		dsn = settings.postgres_url.replace("localhost", "127.0.0.1")
		_pool = await asyncpg.create_pool(
			dsn=dsn,
			min_size=settings.postgres_min_pool_size,
			max_size=settings.postgres_max_pool_size,
			ssl="require" if settings.postgres_ssl else "disable",
		)
	return _pool


def set_pool(pool: Optional[asyncpg.pool.Pool]) -> None:
	global _pool
	_pool = pool


async def get_pool() -> asyncpg.pool.Pool:
	if _pool is None:
		await init_pool()
	assert _pool is not None
	return _pool


async def close_pool() -> None:
	global _pool
	if _pool is not None:
		await _pool.close()
		_pool = None


def _ident(name: str) -> str:
	if not _IDENTIFIER_RE.match(name):
		raise GatewayError(f"bad_identifier:{name}")
	return f'"{name}"'


def build_where(filters: Filters, *, start: int = 1) -> Tuple[str, List[Any]]:
	"""Render a filter mapping as a parameterised WHERE clause."""
	clauses: List[str] = []
	params: List[Any] = []
	for column, expected in filters.items():
		position = start + len(params)
		if isinstance(expected, NotEqual):
			clauses.append(f"{_ident(column)} IS DISTINCT FROM ${position}")
			params.append(expected.value)
		elif isinstance(expected, (list, tuple, set, frozenset)):
			clauses.append(f"{_ident(column)} = ANY(${position})")
			params.append(list(expected))
		elif expected is None:
			clauses.append(f"{_ident(column)} IS NULL")
		else:
			clauses.append(f"{_ident(column)} = ${position}")
			params.append(expected)
	if not clauses:
		return "", params
	return " WHERE " + " AND ".join(clauses), params


class PostgresGateway:
	"""Persistence gateway backed by asyncpg with a Redis Streams change feed.

	Successful writes are published to the feed after they commit. A failed
	publish is logged and counted but never turns a committed write into an
	error, since the caller would otherwise roll back a row that exists.
	"""

	def __init__(self, *, pool: Optional[asyncpg.pool.Pool] = None, feed: Optional[RedisChangeFeed] = None) -> None:
		self._pool = pool
		self._feed = feed or RedisChangeFeed()

	async def _acquire_pool(self) -> asyncpg.pool.Pool:
		if self._pool is None:
			self._pool = await get_pool()
		return self._pool

	async def _fetch(self, sql: str, *params: Any) -> List[asyncpg.Record]:
		pool = await self._acquire_pool()
		try:
			async with pool.acquire() as conn:
				return await conn.fetch(sql, *params)
		except (asyncpg.PostgresError, OSError) as exc:
			logger.warning("gateway query failed", exc_info=True, extra={"sql": sql.split(" ", 2)[:2]})
			raise GatewayError(type(exc).__name__) from exc

	async def _publish(self, table: str, event_type: str, rows: List[Row]) -> None:
		for row in rows:
			try:
				await self._feed.publish(table, event_type, row)
			except Exception:  # noqa: BLE001 - the write already committed
				obs_metrics.feed_publish_failure(table)
				logger.warning("feed publish failed", exc_info=True, extra={"table": table})

	async def read(
		self,
		table: str,
		filters: Filters,
		*,
		order_by: Optional[str] = None,
		descending: bool = False,
		limit: Optional[int] = None,
	) -> List[Row]:
		where, params = build_where(filters)
		sql = f"SELECT * FROM {_ident(ensure_table(table))}{where}"
		if order_by:
			sql += f" ORDER BY {_ident(order_by)} {'DESC' if descending else 'ASC'}"
		if limit is not None:
			params.append(int(limit))
			sql += f" LIMIT ${len(params)}"
		return [dict(record) for record in await self._fetch(sql, *params)]

	async def count(self, table: str, filters: Filters) -> int:
		where, params = build_where(filters)
		records = await self._fetch(f"SELECT COUNT(*) AS cnt FROM {_ident(ensure_table(table))}{where}", *params)
		return int(records[0]["cnt"]) if records else 0

	async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
		columns = list(row.keys())
		placeholders = ", ".join(f"${idx}" for idx in range(1, len(columns) + 1))
		sql = (
			f"INSERT INTO {_ident(ensure_table(table))} ({', '.join(_ident(c) for c in columns)}) "
			f"VALUES ({placeholders}) RETURNING *"
		)
		records = await self._fetch(sql, *row.values())
		created = [dict(record) for record in records]
		if not created:
			raise GatewayError("insert_returned_nothing")
		await self._publish(table, INSERT, created)
		return created[0]

	async def update(self, table: str, filters: Filters, patch: Mapping[str, Any]) -> List[Row]:
		if not patch:
			raise GatewayError("empty_patch")
		columns = list(patch.keys())
		assignments = ", ".join(f"{_ident(column)} = ${idx}" for idx, column in enumerate(columns, start=1))
		where, params = build_where(filters, start=len(columns) + 1)
		sql = f"UPDATE {_ident(ensure_table(table))} SET {assignments}{where} RETURNING *"
		records = await self._fetch(sql, *patch.values(), *params)
		updated = [dict(record) for record in records]
		await self._publish(table, UPDATE, updated)
		return updated

	async def upsert(self, table: str, row: Mapping[str, Any]) -> Row:
		key = TABLE_KEYS[ensure_table(table)]
		if key not in row:
			raise GatewayError("missing_key")
		columns = list(row.keys())
		placeholders = ", ".join(f"${idx}" for idx in range(1, len(columns) + 1))
		updates = ", ".join(f"{_ident(c)} = EXCLUDED.{_ident(c)}" for c in columns if c != key) or f"{_ident(key)} = EXCLUDED.{_ident(key)}"
		# xmax = 0 only for freshly inserted tuples
		sql = (
			f"INSERT INTO {_ident(table)} ({', '.join(_ident(c) for c in columns)}) VALUES ({placeholders}) "
			f"ON CONFLICT ({_ident(key)}) DO UPDATE SET {updates} RETURNING *, (xmax = 0) AS _inserted"
		)
		records = await self._fetch(sql, *row.values())
		if not records:
			raise GatewayError("upsert_returned_nothing")
		stored = dict(records[0])
		inserted = bool(stored.pop("_inserted", False))
		await self._publish(table, INSERT if inserted else UPDATE, [stored])
		return stored

	async def subscribe(
		self,
		table: str,
		filters: Filters,
		event_types: Collection[str],
		callback: ChangeCallback,
	) -> StreamSubscription:
		return await self._feed.subscribe(table, filters, event_types, callback)
