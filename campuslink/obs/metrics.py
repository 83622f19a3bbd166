"""Central registry for Prometheus metrics used by the chat & presence core."""

from __future__ import annotations

from prometheus_client import Counter, Gauge

CHAT_SEND = Counter(
	"campuslink_chat_send_total",
	"Chat messages submitted for sending",
)

CHAT_SEND_FAILURES = Counter(
	"campuslink_chat_send_failures_total",
	"Chat message writes that failed and were rolled back",
)

CHAT_RECONCILED = Counter(
	"campuslink_chat_reconciled_total",
	"Optimistic chat entries replaced by a confirmed row",
	["match"],
)

CHAT_READ_RECEIPTS = Counter(
	"campuslink_chat_read_receipts_total",
	"Read receipt writes by result",
	["result"],
)

PRESENCE_WRITES = Counter(
	"campuslink_presence_writes_total",
	"Own presence upserts by action and result",
	["action", "result"],
)

SUBSCRIPTIONS_ACTIVE = Gauge(
	"campuslink_conversation_subscriptions_active",
	"Conversations with live change-feed subscriptions",
)

FEED_EVENTS = Counter(
	"campuslink_feed_events_total",
	"Change-feed events delivered to subscribers",
	["table", "type"],
)

FEED_PUBLISH_FAILURES = Counter(
	"campuslink_feed_publish_failures_total",
	"Change-feed events that could not be published",
	["table"],
)


def inc_chat_send() -> None:
	CHAT_SEND.inc()


def inc_chat_send_failure() -> None:
	CHAT_SEND_FAILURES.inc()


def inc_chat_reconciled(match: str) -> None:
	CHAT_RECONCILED.labels(match=match).inc()


def inc_read_receipt(result: str, count: int = 1) -> None:
	CHAT_READ_RECEIPTS.labels(result=result).inc(count)


def inc_presence_write(action: str, result: str) -> None:
	PRESENCE_WRITES.labels(action=action, result=result).inc()


def subscription_opened() -> None:
	SUBSCRIPTIONS_ACTIVE.inc()


def subscription_closed() -> None:
	SUBSCRIPTIONS_ACTIVE.dec()


def feed_event(table: str, event_type: str) -> None:
	FEED_EVENTS.labels(table=table, type=event_type).inc()


def feed_publish_failure(table: str) -> None:
	FEED_PUBLISH_FAILURES.labels(table=table).inc()
