"""FastAPI application entrypoint with the Socket.IO realtime server."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ally.api import ops, realtime as realtime_api
from ally.domain.realtime import jobs
from ally.domain.realtime.container import build_container
from ally.domain.realtime.repo import DurableStore, InMemoryDurableStore, PostgresDurableStore
from ally.infra import postgres
from ally.obs import init as obs_init
from ally.settings import settings


def _build_store() -> DurableStore:
	if settings.store_backend == "postgres":
		return PostgresDurableStore()
	return InMemoryDurableStore()


container = build_container(_build_store())


@asynccontextmanager
async def lifespan(app: FastAPI):
	if isinstance(container.store, PostgresDurableStore):
		await postgres.init_pool()
		await container.store.ensure_schema()
	worker_tasks: list[asyncio.Task] = [
		asyncio.create_task(
			jobs.run_idle_sweeper(container.lifecycle, settings.idle_sweep_interval_seconds),
			name="realtime-idle-sweeper",
		),
		asyncio.create_task(
			jobs.run_typing_sweeper(container.typing, settings.typing_sweep_interval_seconds),
			name="realtime-typing-sweeper",
		),
	]
	try:
		yield
	finally:
		for task in worker_tasks:
			task.cancel()
		await asyncio.gather(*worker_tasks, return_exceptions=True)
		await postgres.close_pool()


app = FastAPI(title="Ally Realtime", lifespan=lifespan)
app.state.realtime = container

allow_origins = list(getattr(settings, "cors_allow_origins", []))
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else []

# Starlette disallows wildcard '*' with allow_credentials=True. Replace '*' with explicit origins.
if "*" in allow_origins:
	allow_origins = ["http://localhost:3000", "http://127.0.0.1:3000"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

# Emitting from the connect handler requires the connection to be accepted first
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins, always_connect=True)
sio.register_namespace(container.namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
obs_init(app)

app.include_router(ops.router, tags=["ops"])
app.include_router(realtime_api.router, tags=["realtime"])
