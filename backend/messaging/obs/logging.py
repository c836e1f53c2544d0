"""Structured JSON logging with per-request context.

Context fields (request id, route, user, client ip, socket id) live in
`ContextVar`s so they follow the request through awaits. Extra fields whose
name marks them as sensitive are redacted; message bodies, compose text and
previews never reach the logs.
"""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from messaging.settings import settings

_LOGGER_NAME = "messaging"

_CONTEXT: Dict[str, ContextVar[Optional[str]]] = {
	name: ContextVar(f"obs_{name}", default=None)
	for name in ("request_id", "route", "user_id", "client_ip", "socket_id")
}

# Matched against the underscore-separated parts of a field name.
_SENSITIVE_PARTS = frozenset(
	{
		"authorization",
		"body",
		"email",
		"password",
		"payload",
		"preview",
		"secret",
		"text",
		"token",
	}
)

_MAX_STRING_LENGTH = 256
_MAX_COLLECTION_ITEMS = 10

_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "taskName"}


def bind_context(**fields: Optional[str]) -> Dict[str, Token]:
	"""Bind non-empty context fields; returns tokens for `reset_context`."""
	tokens: Dict[str, Token] = {}
	for name, value in fields.items():
		if value is None:
			continue
		var = _CONTEXT.get(name)
		if var is None:
			raise KeyError(f"unknown log context field: {name}")
		tokens[name] = var.set(str(value))
	return tokens


def reset_context(tokens: Mapping[str, Token]) -> None:
	for name, token in tokens.items():
		_CONTEXT[name].reset(token)


def current_request_id() -> Optional[str]:
	return _CONTEXT["request_id"].get()


def _is_sensitive(key: str) -> bool:
	return any(part in _SENSITIVE_PARTS for part in key.lower().split("_"))


def _sanitize(value: Any) -> Any:
	if isinstance(value, str):
		if len(value) <= _MAX_STRING_LENGTH:
			return value
		return f"{value[:_MAX_STRING_LENGTH]}…"
	if isinstance(value, dict):
		items = list(value.items())
		cleaned = {str(k): ("[redacted]" if _is_sensitive(str(k)) else _sanitize(v)) for k, v in items[:_MAX_COLLECTION_ITEMS]}
		if len(items) > _MAX_COLLECTION_ITEMS:
			cleaned["…"] = f"+{len(items) - _MAX_COLLECTION_ITEMS} keys"
		return cleaned
	if isinstance(value, (list, tuple, set)):
		values = [_sanitize(item) for item in list(value)[:_MAX_COLLECTION_ITEMS]]
		if len(value) > _MAX_COLLECTION_ITEMS:
			values.append("…")
		return values
	return value


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per line: service metadata, context, then extras."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (logging api)
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
			if key in _RECORD_ATTRS or key.startswith("_"):
				continue
			payload[key] = "[redacted]" if _is_sensitive(key) else _sanitize(value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Sample info records at `obs_log_sampling_rate_info`; keep everything else."""

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
	# Engine.IO and Socket.IO are chatty at info.
	for noisy in ("engineio", "socketio"):
		logging.getLogger(noisy).setLevel(max(logging.WARNING, root.level))
	return logging.getLogger(_LOGGER_NAME)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _LOGGER_NAME)
