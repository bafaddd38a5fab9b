"""Central registry for Prometheus metrics used by the realtime layer."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNTER = Counter(
	"ally_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"ally_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"ally_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"ally_socketio_events_total",
	"Socket.IO events received per namespace",
	["namespace", "event"],
)

SOCKET_REJECTS = Counter(
	"ally_socketio_rejects_total",
	"Inbound socket events rejected with an error event",
	["event", "code"],
)

PRESENCE_ONLINE = Gauge(
	"ally_presence_online_identities",
	"Identities with at least one live connection",
)

PRESENCE_CONNECTIONS = Gauge(
	"ally_presence_connections",
	"Live connections tracked by the presence registry",
)

PRESENCE_IDLE_DISCONNECTS = Counter(
	"ally_presence_idle_disconnects_total",
	"Connections closed by the idle sweep",
)

HYDRATION_FAILURES = Counter(
	"ally_room_hydration_failures_total",
	"Room hydrations that fell back to an empty room set",
)

DISPATCH_DELIVERIES = Counter(
	"ally_dispatch_deliveries_total",
	"Events handed to live connections",
	["event"],
)

DISPATCH_FAILURES = Counter(
	"ally_dispatch_failures_total",
	"Deliveries that raised inside a connection sink",
	["event"],
)

TYPING_NOTIFICATIONS = Counter(
	"ally_typing_notifications_total",
	"Typing indicator notifications dispatched",
	["state"],
)

TYPING_EXPIRED = Counter(
	"ally_typing_expired_total",
	"Typing entries removed by the expiry sweep",
)

CHAT_SEND = Counter(
	"ally_chat_send_total",
	"Messages persisted and dispatched",
	["kind"],
)

CHAT_DELIVERED_UPDATES = Counter(
	"ally_chat_delivered_updates_total",
	"Delivery markers written",
)

CHAT_READ_UPDATES = Counter(
	"ally_chat_read_updates_total",
	"Read markers written",
)

BACKGROUND_RUNS = Counter(
	"ally_background_runs_total",
	"Background sweep iterations",
	["name", "result"],
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def socket_reject(event: str, code: str) -> None:
	SOCKET_REJECTS.labels(event=event, code=code).inc()


def presence_snapshot(identities: int, connections: int) -> None:
	PRESENCE_ONLINE.set(float(identities))
	PRESENCE_CONNECTIONS.set(float(connections))


def inc_idle_disconnect(count: int = 1) -> None:
	PRESENCE_IDLE_DISCONNECTS.inc(count)


def inc_hydration_failure() -> None:
	HYDRATION_FAILURES.inc()


def inc_dispatch(event: str, count: int) -> None:
	if count:
		DISPATCH_DELIVERIES.labels(event=event).inc(count)


def inc_dispatch_failure(event: str) -> None:
	DISPATCH_FAILURES.labels(event=event).inc()


def inc_typing(state: str) -> None:
	TYPING_NOTIFICATIONS.labels(state=state).inc()


def inc_typing_expired(count: int) -> None:
	if count:
		TYPING_EXPIRED.inc(count)


def inc_chat_send(kind: str) -> None:
	CHAT_SEND.labels(kind=kind).inc()


def inc_chat_delivered() -> None:
	CHAT_DELIVERED_UPDATES.inc()


def inc_chat_read() -> None:
	CHAT_READ_UPDATES.inc()


def record_job_run(name: str, *, result: str) -> None:
	BACKGROUND_RUNS.labels(name=name, result=result).inc()
