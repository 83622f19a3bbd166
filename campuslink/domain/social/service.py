"""Connection request workflow: pending -> accepted | rejected."""

from __future__ import annotations

import logging
from typing import List, Optional

from campuslink.domain.common.clock import Clock, utcnow
from campuslink.domain.social.exceptions import (
	ConnectionAlreadyAccepted,
	ConnectionAlreadyPending,
	ConnectionForbidden,
	ConnectionGone,
	ConnectionNotFound,
	ConnectionRejectedError,
	ConnectionSelfError,
)
from campuslink.domain.social.models import Connection, ConnectionStatus, ModeContext
from campuslink.infra.gateway import PersistenceGateway

logger = logging.getLogger(__name__)

_TABLE = "connections"


def guard_not_self(user_id: str, target_id: str) -> None:
	if str(user_id) == str(target_id):
		raise ConnectionSelfError()


class ConnectionService:
	"""Creates and transitions connection rows through the persistence gateway."""

	def __init__(self, gateway: PersistenceGateway, *, clock: Clock = utcnow) -> None:
		self._gateway = gateway
		self._clock = clock

	async def get_connection(self, connection_id: str) -> Connection:
		rows = await self._gateway.read(_TABLE, {"id": str(connection_id)}, limit=1)
		if not rows:
			raise ConnectionNotFound()
		return Connection.from_record(rows[0])

	async def find_between(self, user_a: str, user_b: str) -> Optional[Connection]:
		"""Return the single connection row for the unordered pair, if any."""
		pair = [str(user_a), str(user_b)]
		rows = await self._gateway.read(_TABLE, {"requester_id": pair, "receiver_id": pair})
		for row in rows:
			connection = Connection.from_record(row)
			if connection.requester_id != connection.receiver_id:
				return connection
		return None

	async def list_for_user(self, user_id: str, *, status: Optional[ConnectionStatus] = None) -> List[Connection]:
		user_id = str(user_id)
		filters: dict = {}
		if status is not None:
			filters["status"] = status.value
		as_requester = await self._gateway.read(_TABLE, {**filters, "requester_id": user_id})
		as_receiver = await self._gateway.read(_TABLE, {**filters, "receiver_id": user_id})
		seen: set[str] = set()
		connections: List[Connection] = []
		for row in [*as_requester, *as_receiver]:
			connection = Connection.from_record(row)
			if connection.id in seen:
				continue
			seen.add(connection.id)
			connections.append(connection)
		return connections

	async def request(
		self,
		requester_id: str,
		receiver_id: str,
		mode_context: ModeContext | str,
		message: str = "",
	) -> Connection:
		guard_not_self(requester_id, receiver_id)
		mode = ModeContext(mode_context)
		existing = await self.find_between(requester_id, receiver_id)
		if existing is not None:
			if existing.status is ConnectionStatus.PENDING:
				raise ConnectionAlreadyPending()
			if existing.status is ConnectionStatus.ACCEPTED:
				raise ConnectionAlreadyAccepted()
			raise ConnectionRejectedError()
		now = self._clock()
		row = await self._gateway.insert(
			_TABLE,
			{
				"requester_id": str(requester_id),
				"receiver_id": str(receiver_id),
				"status": ConnectionStatus.PENDING.value,
				"mode_context": mode.value,
				"request_message": message.strip(),
				"created_at": now,
				"updated_at": now,
			},
		)
		connection = Connection.from_record(row)
		logger.info(
			"connection requested",
			extra={"connection": connection.id, "mode_context": mode.value},
		)
		return connection

	async def accept(self, connection_id: str, actor_id: str) -> Connection:
		return await self._transition(connection_id, actor_id, ConnectionStatus.ACCEPTED)

	async def reject(self, connection_id: str, actor_id: str) -> Connection:
		return await self._transition(connection_id, actor_id, ConnectionStatus.REJECTED)

	async def _transition(self, connection_id: str, actor_id: str, new_status: ConnectionStatus) -> Connection:
		connection = await self.get_connection(connection_id)
		if connection.receiver_id != str(actor_id):
			raise ConnectionForbidden("not_receiver")
		if connection.status is not ConnectionStatus.PENDING:
			raise ConnectionGone()
		# Conditional on status so a concurrent transition cannot be overwritten
		updated = await self._gateway.update(
			_TABLE,
			{"id": connection.id, "status": ConnectionStatus.PENDING.value},
			{"status": new_status.value, "updated_at": self._clock()},
		)
		if not updated:
			raise ConnectionGone()
		result = Connection.from_record(updated[0])
		logger.info(
			"connection transitioned",
			extra={"connection": result.id, "status": result.status.value},
		)
		return result

	async def ensure_chat_allowed(self, connection_id: str, user_id: str) -> Connection:
		"""Load a connection and check ``user_id`` may open a chat on it."""
		connection = await self.get_connection(connection_id)
		if not connection.is_participant(user_id):
			raise ConnectionForbidden("not_participant")
		if not connection.is_accepted:
			raise ConnectionForbidden("not_accepted")
		return connection
