from unittest.mock import AsyncMock

import pytest
import socketio

from ally.domain.realtime.container import build_container
from ally.domain.realtime.models import ConnectionState


def _scope_with_authorization(token: str) -> dict:
	return {
		"headers": [(b"authorization", f"Bearer {token}".encode())],
		"client": ("10.0.0.5", 5000),
	}


@pytest.fixture
def namespace(store):
	container = build_container(store)
	server = socketio.AsyncServer(async_mode="asgi")
	namespace = container.namespace
	server.register_namespace(namespace)
	namespace.emit = AsyncMock()
	namespace.disconnect = AsyncMock()
	namespace.container = container
	return namespace


def _emitted(namespace, name, sid=None):
	return [
		call.args[1]
		for call in namespace.emit.await_args_list
		if call.args[0] == name and (sid is None or call.kwargs.get("room") == sid)
	]


@pytest.mark.asyncio
async def test_connect_requires_token(namespace):
	with pytest.raises(ConnectionRefusedError):
		await namespace.trigger_event("connect", "sid-1", {"asgi.scope": {"headers": []}})

	assert namespace.connection("sid-1") is None
	assert len(namespace.container.registry) == 0


@pytest.mark.asyncio
async def test_connect_with_header_token_emits_connected(namespace, token_for):
	environ = {"asgi.scope": _scope_with_authorization(token_for("alice"))}

	await namespace.trigger_event("connect", "sid-1", environ)

	[ack] = _emitted(namespace, "connected", "sid-1")
	assert ack["userId"] == "alice"
	assert namespace.connection("sid-1").state is ConnectionState.ACTIVE


@pytest.mark.asyncio
async def test_auth_payload_token_and_message_flow(namespace, token_for):
	await namespace.trigger_event("connect", "sid-a", {"asgi.scope": {"headers": []}}, {"token": token_for("alice")})
	await namespace.trigger_event("connect", "sid-b", {"asgi.scope": {"headers": []}}, {"token": token_for("bob")})
	namespace.emit.reset_mock()

	await namespace.trigger_event("send_message", "sid-a", {"groupId": "g1", "content": "hello"})

	assert [payload["status"] for payload in _emitted(namespace, "new_message", "sid-a")] == ["sent"]
	assert [payload["status"] for payload in _emitted(namespace, "new_message", "sid-b")] == ["delivered"]


@pytest.mark.asyncio
async def test_invalid_payload_emits_single_error(namespace, token_for):
	await namespace.trigger_event("connect", "sid-a", {"asgi.scope": _scope_with_authorization(token_for("alice"))})
	namespace.emit.reset_mock()

	await namespace.trigger_event("join_room", "sid-a", {"roomId": "nonsense"})

	assert namespace.emit.await_count == 1
	assert _emitted(namespace, "error", "sid-a")[0]["code"] == "invalid_payload"


@pytest.mark.asyncio
async def test_disconnect_marks_identity_offline(namespace, token_for):
	await namespace.trigger_event("connect", "sid-a", {"asgi.scope": _scope_with_authorization(token_for("alice"))})
	await namespace.trigger_event("connect", "sid-b", {"asgi.scope": _scope_with_authorization(token_for("bob"))})
	namespace.emit.reset_mock()

	await namespace.trigger_event("disconnect", "sid-a", "client disconnect")
	await namespace.trigger_event("disconnect", "sid-a", "client disconnect")

	assert not namespace.container.registry.is_online("alice")
	assert len(_emitted(namespace, "member_offline", "sid-b")) == 1


@pytest.mark.asyncio
async def test_events_before_connect_are_refused(namespace):
	with pytest.raises(ConnectionRefusedError):
		await namespace.trigger_event("ping", "sid-unknown", {})


@pytest.mark.asyncio
async def test_forced_disconnect_closes_transport(namespace, token_for):
	await namespace.trigger_event("connect", "sid-a", {"asgi.scope": _scope_with_authorization(token_for("alice"))})
	connection = namespace.connection("sid-a")

	await namespace.container.lifecycle.force_disconnect(connection, "moderation")

	namespace.disconnect.assert_awaited_once_with("sid-a")
	assert not namespace.container.registry.is_online("alice")


@pytest.mark.asyncio
async def test_edit_and_reaction_events_reach_both_sides(namespace, token_for):
	await namespace.trigger_event("connect", "sid-a", {"asgi.scope": {"headers": []}}, {"token": token_for("alice")})
	await namespace.trigger_event("connect", "sid-b", {"asgi.scope": {"headers": []}}, {"token": token_for("bob")})
	await namespace.trigger_event("send_message", "sid-a", {"recipientId": "bob", "content": "draft"})
	[sent] = _emitted(namespace, "new_message", "sid-a")
	namespace.emit.reset_mock()

	await namespace.trigger_event("edit_message", "sid-a", {"messageId": sent["messageId"], "newContent": "final"})
	await namespace.trigger_event("add_reaction", "sid-b", {"messageId": sent["messageId"], "emoji": "👍"})

	assert [payload["content"] for payload in _emitted(namespace, "message_edited", "sid-b")] == ["final"]
	assert [payload["userId"] for payload in _emitted(namespace, "reaction_added", "sid-a")] == ["bob"]
	assert _emitted(namespace, "error") == []
