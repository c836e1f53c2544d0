"""Observability bootstrap: JSON logging and the request middleware."""

from __future__ import annotations

from fastapi import FastAPI

from messaging.obs import logging as obs_logging
from messaging.obs import middleware
from messaging.settings import settings

_logging_configured = False


def init(app: FastAPI) -> None:
	"""Install the request middleware and, when enabled, JSON logging.

	The middleware always stamps request ids; it skips metrics and access logs
	while `obs_enabled` is off. Socket.IO metrics are recorded by the namespaces.
	"""
	global _logging_configured
	middleware.install(app)
	if settings.obs_enabled and not _logging_configured:
		obs_logging.configure_logging()
		_logging_configured = True


__all__ = ["init"]
