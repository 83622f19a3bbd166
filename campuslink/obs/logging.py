"""JSON logging for the chat & presence core.

Records carry the user and conversation bound to the current task, and any
``extra`` fields after scrubbing: message text and drafts never reach the log
stream, and long strings or id lists are clipped.
"""

from __future__ import annotations

import json
import logging
import random
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from campuslink.settings import settings

_LOGGER_NAME = "campuslink"

_CONTEXT: Dict[str, ContextVar[Optional[str]]] = {
	"user_id": ContextVar("obs_user_id", default=None),
	"connection_id": ContextVar("obs_connection_id", default=None),
}

# Substrings of extra keys whose values are replaced wholesale
_REDACT = ("content", "draft", "body", "token", "secret", "password", "authorization", "email")
_REDACTED = "[redacted]"

_MAX_TEXT = 256
_MAX_ITEMS = 10
_ELLIPSIS = "…"

# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}


def bind_context(*, user_id: Optional[str] = None, connection_id: Optional[str] = None) -> Dict[str, Token]:
	"""Bind fields for the current task; returns tokens for ``reset_context``."""
	tokens: Dict[str, Token] = {}
	for name, value in (("user_id", user_id), ("connection_id", connection_id)):
		if value is not None:
			tokens[name] = _CONTEXT[name].set(str(value))
	return tokens


def reset_context(tokens: Dict[str, Token]) -> None:
	for name, token in tokens.items():
		_CONTEXT[name].reset(token)


@contextmanager
def log_context(*, user_id: Optional[str] = None, connection_id: Optional[str] = None) -> Iterator[None]:
	tokens = bind_context(user_id=user_id, connection_id=connection_id)
	try:
		yield
	finally:
		reset_context(tokens)


def _scrub(key: str, value: Any, depth: int = 0) -> Any:
	if any(word in key.lower() for word in _REDACT):
		return _REDACTED
	if isinstance(value, str):
		return value if len(value) <= _MAX_TEXT else value[:_MAX_TEXT] + _ELLIPSIS
	if isinstance(value, datetime):
		return value.isoformat()
	if depth >= 2:
		return value if isinstance(value, (int, float, bool)) or value is None else str(value)
	if isinstance(value, dict):
		items = list(value.items())
		scrubbed = {str(k): _scrub(str(k), v, depth + 1) for k, v in items[:_MAX_ITEMS]}
		if len(items) > _MAX_ITEMS:
			scrubbed[_ELLIPSIS] = f"+{len(items) - _MAX_ITEMS} keys"
		return scrubbed
	if isinstance(value, (list, tuple, set, frozenset)):
		items = list(value)
		clipped = [_scrub(key, item, depth + 1) for item in items[:_MAX_ITEMS]]
		if len(items) > _MAX_ITEMS:
			clipped.append(_ELLIPSIS)
		return clipped
	return value


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per record."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (match logging api)
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"msg": record.getMessage(),
			"logger": record.name,
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		for name, var in _CONTEXT.items():
			value = var.get()
			if value:
				payload[name] = value
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in record.__dict__.items():
			if key not in _RECORD_ATTRS:
				payload[key] = _scrub(key, value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Drop a share of INFO records; other levels always pass."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = max(0.0, min(1.0, settings.obs_log_sampling_rate_info))
		return rate >= 1.0 or random.random() < rate


def configure_logging() -> logging.Logger:
	root = logging.getLogger()
	root.handlers.clear()
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root.addHandler(handler)
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_LOGGER_NAME)
