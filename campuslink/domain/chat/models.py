"""Domain models for chat transcripts and presence."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Mapping, Optional

MESSAGE_TYPE_TEXT = "text"
TEMP_ID_PREFIX = "temp-"


@dataclass(slots=True)
class Message:
	id: str
	connection_id: str
	sender_id: str
	content: str
	created_at: datetime
	message_type: str = MESSAGE_TYPE_TEXT
	is_read: bool = False
	client_msg_id: Optional[str] = None
	# Local-only marker for entries not yet confirmed by the gateway
	is_optimistic: bool = False

	@classmethod
	def from_record(cls, record: Mapping) -> "Message":
		return cls(
			id=str(record["id"]),
			connection_id=str(record["connection_id"]),
			sender_id=str(record["sender_id"]),
			content=record["content"],
			created_at=record["created_at"],
			message_type=record.get("message_type") or MESSAGE_TYPE_TEXT,
			is_read=bool(record.get("is_read", False)),
			client_msg_id=record.get("client_msg_id"),
		)


@dataclass(slots=True)
class UserPresence:
	user_id: str
	is_online: bool
	current_chat_id: Optional[str]
	is_typing: bool
	last_seen: datetime

	@classmethod
	def from_record(cls, record: Mapping) -> "UserPresence":
		current = record.get("current_chat_id")
		return cls(
			user_id=str(record["user_id"]),
			is_online=bool(record.get("is_online", False)),
			current_chat_id=str(current) if current is not None else None,
			is_typing=bool(record.get("is_typing", False)),
			last_seen=record["last_seen"],
		)


@dataclass(slots=True)
class Profile:
	"""Read-only view of a user's profile, used for chat headers."""

	id: str
	full_name: str
	avatar_url: Optional[str] = None
	major: Optional[str] = None
	college_name: Optional[str] = None

	@classmethod
	def from_record(cls, record: Mapping) -> "Profile":
		return cls(
			id=str(record["id"]),
			full_name=record.get("full_name") or "",
			avatar_url=record.get("avatar_url"),
			major=record.get("major"),
			college_name=record.get("college_name"),
		)

	@property
	def first_name(self) -> str:
		return self.full_name.split(" ", 1)[0] if self.full_name else ""


@dataclass(slots=True)
class DateGroup:
	day: date
	messages: List[Message] = field(default_factory=list)
