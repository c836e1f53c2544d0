"""Request middleware: request ids, log context, metrics and access logs."""

from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from messaging.obs import logging as obs_logging
from messaging.obs import metrics
from messaging.settings import settings

REQUEST_ID_ATTR = "request_id"
REQUEST_ID_HEADER = "X-Request-Id"

_logger = obs_logging.get_logger("messaging.http")


def _route_template(request: Request) -> str:
	# Templates keep conversation ids out of metric labels.
	route = request.scope.get("route")
	return getattr(route, "path", None) or request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
		setattr(request.state, REQUEST_ID_ATTR, request_id)
		if not settings.obs_enabled:
			response = await call_next(request)
			response.headers.setdefault(REQUEST_ID_HEADER, request_id)
			return response

		tokens = obs_logging.bind_context(
			request_id=request_id,
			user_id=request.headers.get("X-User-Id"),
			socket_id=request.headers.get("X-Socket-Id"),
			client_ip=request.client.host if request.client else None,
		)
		start = time.perf_counter()
		status_code = 500
		try:
			response = await call_next(request)
			status_code = response.status_code
		except Exception:
			_logger.exception("http_request_error", extra={"method": request.method, "path": request.url.path})
			raise
		finally:
			elapsed = time.perf_counter() - start
			route = _route_template(request)
			metrics.observe_request(route, request.method, status_code, elapsed)
			log = _logger.warning if status_code >= 500 else _logger.info
			log(
				"http_request",
				extra={
					"method": request.method,
					"route": route,
					"status": status_code,
					"latency_ms": round(elapsed * 1000, 3),
				},
			)
			obs_logging.reset_context(tokens)
		response.headers.setdefault(REQUEST_ID_HEADER, request_id)
		return response


def install(app: FastAPI) -> None:
	app.add_middleware(ObservabilityMiddleware)
