from contextlib import asynccontextmanager

import asyncpg
import pytest

from ally.domain.realtime.exceptions import TransientStoreError
from ally.domain.realtime.membership import RoomMembershipIndex
from ally.domain.realtime.models import Room
from ally.domain.realtime.repo import PostgresDurableStore


class _BrokenConnection:
	def __init__(self, exc: Exception) -> None:
		self._exc = exc

	async def fetchrow(self, *args, **kwargs):
		raise self._exc

	async def fetch(self, *args, **kwargs):
		raise self._exc

	async def execute(self, *args, **kwargs):
		raise self._exc


class _FakePool:
	def __init__(self, exc: Exception, *, on_acquire: bool = False) -> None:
		self._exc = exc
		self._on_acquire = on_acquire

	@asynccontextmanager
	async def _acquire(self):
		if self._on_acquire:
			raise self._exc
		yield _BrokenConnection(self._exc)

	def acquire(self):
		return self._acquire()


@pytest.mark.asyncio
@pytest.mark.parametrize(
	"exc",
	[
		asyncpg.PostgresError("server closed the connection"),
		asyncpg.InterfaceError("connection is closed"),
		ConnectionResetError("reset by peer"),
		TimeoutError(),
	],
)
async def test_driver_failures_surface_as_transient(exc):
	store = PostgresDurableStore(pool=_FakePool(exc))

	with pytest.raises(TransientStoreError) as info:
		await store.get_user("alice")

	assert info.value.__cause__ is exc
	assert info.value.code == "store_unavailable"


@pytest.mark.asyncio
async def test_pool_acquire_failure_is_transient():
	store = PostgresDurableStore(pool=_FakePool(OSError("no route to host"), on_acquire=True))

	with pytest.raises(TransientStoreError):
		await store.mark_read("m1", "bob", None)


@pytest.mark.asyncio
async def test_programming_errors_are_not_masked():
	store = PostgresDurableStore(pool=_FakePool(KeyError("name")))

	with pytest.raises(KeyError):
		await store.get_user("alice")


@pytest.mark.asyncio
async def test_hydrate_against_unreachable_database_keeps_personal_room():
	store = PostgresDurableStore(pool=_FakePool(asyncpg.PostgresError("down")))
	index = RoomMembershipIndex(store)

	rooms = await index.hydrate("alice")

	assert rooms == {Room.personal("alice")}
