"""Periodic background sweeps started from the application lifespan."""

from __future__ import annotations

import asyncio
import logging

from ally.obs import metrics as obs_metrics

from .lifecycle import ConnectionLifecycle
from .typing_state import TypingTracker

logger = logging.getLogger(__name__)


async def run_idle_sweeper(lifecycle: ConnectionLifecycle, interval_s: float = 60.0) -> None:
	"""Force-close connections that have been silent past the idle threshold."""
	interval = max(0.01, float(interval_s))
	while True:
		await asyncio.sleep(interval)
		try:
			closed = await lifecycle.sweep_idle()
		except asyncio.CancelledError:
			raise
		except Exception:  # pragma: no cover - defensive logging
			logger.exception("idle sweep iteration failed")
			obs_metrics.record_job_run("idle_sweep", result="error")
			continue
		if closed:
			logger.info("idle sweeper closed %s connection(s)", closed)
		obs_metrics.record_job_run("idle_sweep", result="ok")


async def run_typing_sweeper(tracker: TypingTracker, interval_s: float = 1.0) -> None:
	"""Expire typing indicators that were not refreshed within the timeout."""
	interval = max(0.01, float(interval_s))
	while True:
		await asyncio.sleep(interval)
		try:
			await tracker.sweep()
		except asyncio.CancelledError:
			raise
		except Exception:  # pragma: no cover - defensive logging
			logger.exception("typing sweep iteration failed")
			obs_metrics.record_job_run("typing_sweep", result="error")
			continue
		obs_metrics.record_job_run("typing_sweep", result="ok")
