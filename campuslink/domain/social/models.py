"""Domain models for connections between users."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Mapping, Optional

from campuslink.domain.social.exceptions import ConnectionForbidden


class ConnectionStatus(str, Enum):
	"""Connection lifecycle; accepted and rejected are terminal."""

	PENDING = "pending"
	ACCEPTED = "accepted"
	REJECTED = "rejected"


class ModeContext(str, Enum):
	"""Interaction intent declared when the request was sent."""

	STUDY = "study"
	SOCIAL = "social"
	PROJECT = "project"


class PartyRole(str, Enum):
	REQUESTER = "requester"
	RECEIVER = "receiver"


@dataclass(slots=True)
class Connection:
	id: str
	requester_id: str
	receiver_id: str
	status: ConnectionStatus
	mode_context: ModeContext
	request_message: str
	created_at: Optional[datetime]
	updated_at: Optional[datetime]

	@classmethod
	def from_record(cls, record: Mapping) -> "Connection":
		return cls(
			id=str(record["id"]),
			requester_id=str(record["requester_id"]),
			receiver_id=str(record["receiver_id"]),
			status=ConnectionStatus(record["status"]),
			mode_context=ModeContext(record["mode_context"]),
			request_message=record.get("request_message") or "",
			created_at=record.get("created_at"),
			updated_at=record.get("updated_at"),
		)

	def participants(self) -> tuple[str, str]:
		return (self.requester_id, self.receiver_id)

	def is_participant(self, user_id: str) -> bool:
		return str(user_id) in self.participants()

	@property
	def is_accepted(self) -> bool:
		return self.status is ConnectionStatus.ACCEPTED

	@property
	def last_activity_at(self) -> Optional[datetime]:
		return self.updated_at or self.created_at


@dataclass(frozen=True, slots=True)
class OtherParty:
	"""The counterpart of ``self_id`` on a connection, tagged with their role."""

	role: PartyRole
	user_id: str


def other_party(connection: Connection, self_id: str) -> OtherParty:
	"""Resolve who is on the other side of ``connection`` for ``self_id``."""
	self_id = str(self_id)
	if self_id == connection.requester_id:
		return OtherParty(role=PartyRole.RECEIVER, user_id=connection.receiver_id)
	if self_id == connection.receiver_id:
		return OtherParty(role=PartyRole.REQUESTER, user_id=connection.requester_id)
	raise ConnectionForbidden("not_participant")
