import sys
from pathlib import Path
from typing import Callable, List, Optional

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from ally.domain.realtime.container import RealtimeContainer, build_container
from ally.domain.realtime.models import (
	AccountStatus,
	Connection,
	GroupMember,
	GroupRecord,
	GroupRole,
	OutboundEvent,
	UserRecord,
)
from ally.domain.realtime.repo import InMemoryDurableStore
from ally.infra import jwt as jwt_helper
from ally.infra import postgres
from ally.settings import settings


class FakeClock:
	def __init__(self, start: float = 1000.0) -> None:
		self.now = start

	def __call__(self) -> float:
		return self.now

	def advance(self, seconds: float) -> None:
		self.now += seconds


class RecordingConnection(Connection):
	"""In-memory sink that records every delivered event."""

	def __init__(self, connection_id: str, *, clock=None, fail: bool = False) -> None:
		if clock is None:
			super().__init__(connection_id)
		else:
			super().__init__(connection_id, clock=clock)
		self.events: List[OutboundEvent] = []
		self.closed_with: Optional[str] = None
		self.fail = fail

	async def deliver(self, event: OutboundEvent) -> None:
		if self.fail:
			raise RuntimeError("sink broken")
		self.events.append(event)

	async def close(self, reason: str) -> None:
		self.closed_with = reason

	def named(self, name: str) -> List[dict]:
		return [event.payload for event in self.events if event.name == name]

	def names(self) -> List[str]:
		return [event.name for event in self.events]

	def clear(self) -> None:
		self.events.clear()


@pytest.fixture(autouse=True)
def fake_redis():
	from ally.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	# a private server per test keeps rate-limit counters isolated
	client = FakeRedis(server=FakeServer(), decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	original_env = settings.environment
	original_public = settings.obs_metrics_public
	settings.environment = "dev"
	settings.obs_metrics_public = True
	try:
		yield
	finally:
		settings.environment = original_env
		settings.obs_metrics_public = original_public


@pytest.fixture
def clock() -> FakeClock:
	return FakeClock()


@pytest.fixture
def store() -> InMemoryDurableStore:
	store = InMemoryDurableStore()
	store.add_user(UserRecord(id="alice", name="Alice", university="McGill"))
	store.add_user(UserRecord(id="bob", name="Bob", university="McGill"))
	store.add_user(UserRecord(id="carol", name="Carol", university="Concordia"))
	store.add_user(UserRecord(id="dave", name="Dave"))
	store.add_user(UserRecord(id="mallory", name="Mallory", status=AccountStatus.BANNED))
	store.add_group(
		GroupRecord(
			id="g1",
			name="Algorithms study group",
			members=[
				GroupMember(user_id="alice", role=GroupRole.OWNER),
				GroupMember(user_id="bob", role=GroupRole.MEMBER),
				GroupMember(user_id="carol", role=GroupRole.ADMIN),
			],
		)
	)
	return store


@pytest.fixture
def container(store, clock) -> RealtimeContainer:
	return build_container(store, clock=clock)


@pytest.fixture
def token_for() -> Callable[[str], str]:
	def _token(user_id: str) -> str:
		return jwt_helper.encode_access({"sub": user_id})

	return _token


@pytest.fixture
def connection_cls():
	return RecordingConnection


@pytest.fixture
def make_connection(clock):
	counter = {"n": 0}

	def _make(*, fail: bool = False) -> RecordingConnection:
		counter["n"] += 1
		return RecordingConnection(f"conn-{counter['n']}", clock=clock, fail=fail)

	return _make


@pytest.fixture
def connect(container, make_connection, token_for):
	async def _connect(user_id: str) -> RecordingConnection:
		connection = make_connection()
		await container.lifecycle.connect(connection, token_for(user_id))
		return connection

	return _connect


@pytest_asyncio.fixture
async def api_client():
	from ally.main import app

	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
