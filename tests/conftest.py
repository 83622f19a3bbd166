from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

from campuslink.domain.social.models import Connection
from campuslink.infra.gateway import InMemoryGateway

ALICE = "alice"
BOB = "bob"
CAROL = "carol"
CONNECTION_ID = "conn-ab"

START = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


class ManualClock:
	"""Deterministic clock; tests move it forward explicitly."""

	def __init__(self, start: datetime) -> None:
		self.now = start

	def __call__(self) -> datetime:
		return self.now

	def advance(self, **kwargs) -> datetime:
		self.now = self.now + timedelta(**kwargs)
		return self.now


@pytest.fixture
def clock():
	return ManualClock(START)


@pytest.fixture
def gateway(clock):
	return InMemoryGateway(clock=clock)


@pytest.fixture
def profiles(gateway):
	return gateway.seed(
		"profiles",
		[
			{"id": ALICE, "full_name": "Alice Martin", "major": "Physics", "college_name": "McGill"},
			{"id": BOB, "full_name": "Bob Tremblay", "avatar_url": "https://cdn.example/bob.png", "major": "History"},
			{"id": CAROL, "full_name": "Carol Nguyen", "major": "Design"},
		],
	)


@pytest.fixture
def accepted_connection(gateway, profiles):
	rows = gateway.seed(
		"connections",
		[
			{
				"id": CONNECTION_ID,
				"requester_id": ALICE,
				"receiver_id": BOB,
				"status": "accepted",
				"mode_context": "study",
				"request_message": "Want to study for the midterm?",
				"created_at": START - timedelta(days=2),
				"updated_at": START - timedelta(days=1),
			}
		],
	)
	return Connection.from_record(rows[0])


@pytest_asyncio.fixture
async def fake_redis():
	from campuslink.infra.redis import redis_client, set_redis_client

	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()
