"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, Summary


REQUEST_COUNTER = Counter(
	"messaging_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"messaging_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"messaging_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"messaging_socketio_events_total",
	"Socket.IO events emitted per namespace",
	["namespace", "event"],
)

RATE_LIMITED_EVENTS = Counter(
	"messaging_rate_limited_total",
	"Events dropped due to rate limiting",
	["kind"],
)

CHAT_CONVERSATIONS_CREATED = Counter(
	"messaging_chat_conversations_created_total",
	"Direct conversations created",
)

CHAT_SEND = Counter(
	"messaging_chat_send_total",
	"Chat messages sent",
)

CHAT_SEND_FAILURES = Counter(
	"messaging_chat_send_failures_total",
	"Chat sends rejected or failed",
	["reason"],
)

CHAT_READ_UPDATES = Counter(
	"messaging_chat_read_updates_total",
	"Chat read receipts",
)

CHAT_TYPING_SIGNALS = Counter(
	"messaging_chat_typing_signals_total",
	"Typing signals relayed",
	["state"],
)

CHAT_FANOUT_FAILURES = Counter(
	"messaging_chat_fanout_failures_total",
	"Realtime emits that failed after a commit",
	["event"],
)

REDIS_UP = Gauge("messaging_redis_up", "Redis availability (1=up,0=down)")
REDIS_LATENCY = Summary("messaging_redis_latency_seconds", "Redis ping latency (seconds)")

POSTGRES_UP = Gauge("messaging_postgres_up", "Postgres availability (1=up,0=down)")
POSTGRES_LATENCY = Summary("messaging_postgres_latency_seconds", "Postgres ping latency (seconds)")


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def inc_rate_limited(kind: str) -> None:
	RATE_LIMITED_EVENTS.labels(kind=kind).inc()


def inc_chat_conversation_created() -> None:
	CHAT_CONVERSATIONS_CREATED.inc()


def inc_chat_send() -> None:
	CHAT_SEND.inc()


def inc_chat_send_failure(reason: str) -> None:
	CHAT_SEND_FAILURES.labels(reason=reason).inc()


def inc_chat_read(count: int = 1) -> None:
	if count > 0:
		CHAT_READ_UPDATES.inc(count)


def inc_chat_typing(typing: bool) -> None:
	CHAT_TYPING_SIGNALS.labels(state="start" if typing else "stop").inc()


def inc_chat_fanout_failure(event: str) -> None:
	CHAT_FANOUT_FAILURES.labels(event=event).inc()


def mark_redis(ok: bool, *, latency_seconds: float | None = None) -> None:
	REDIS_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		REDIS_LATENCY.observe(latency_seconds)


def mark_postgres(ok: bool, *, latency_seconds: float | None = None) -> None:
	POSTGRES_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		POSTGRES_LATENCY.observe(latency_seconds)
