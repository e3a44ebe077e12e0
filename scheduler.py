#!/usr/bin/env python3
"""
Periodic feed processing trigger.

This module implements the in-process scheduler that keeps feeds fresh. Every
SCHEDULER_INTERVAL_SECONDS it POSTs to the service's own /process-feeds
endpoint, so scheduled runs go through exactly the same path as external
callers. It supports:

- Fire-and-forget ticks: a slow run never delays the next tick
- Skipping a tick while the previous run is still in flight (configurable)
- Recording the last successful run for the /health endpoint
- Logging failures without ever stopping the loop
"""

import asyncio
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from aiohttp import ClientSession, ClientError, ClientTimeout

from config import config, get_logger
from telemetry import init_telemetry, get_tracer, trace_span
from utils import format_duration

logger = get_logger("scheduler")

init_telemetry("status-processor-scheduler")
_tracer = get_tracer("scheduler")


class LivenessState:
    """Timestamp of the last successful scheduled run, shared with the health endpoint."""

    def __init__(self):
        self._lock = threading.Lock()
        self._last_success: Optional[datetime] = None

    def mark_success(self, when: Optional[datetime] = None) -> None:
        with self._lock:
            self._last_success = when or datetime.now(timezone.utc)

    @property
    def last_success(self) -> Optional[datetime]:
        with self._lock:
            return self._last_success

    def snapshot(self) -> Dict[str, Any]:
        """Return a JSON-friendly view of the liveness state."""
        last = self.last_success
        if last is None:
            return {'last_successful_run': None, 'seconds_since_last_success': None}
        age = (datetime.now(timezone.utc) - last).total_seconds()
        return {
            'last_successful_run': last.isoformat(),
            'seconds_since_last_success': round(age, 1),
        }


class FeedScheduler:
    """Fires a /process-feeds request on a fixed interval."""

    def __init__(
        self,
        liveness: Optional[LivenessState] = None,
        processor_url: Optional[str] = None,
        interval_seconds: Optional[float] = None,
        skip_if_running: Optional[bool] = None,
    ):
        self.liveness = liveness or LivenessState()
        self.processor_url = (processor_url or config.PROCESSOR_URL).rstrip('/')
        self.interval_seconds = interval_seconds if interval_seconds is not None else config.SCHEDULER_INTERVAL_SECONDS
        self.skip_if_running = config.SCHEDULER_SKIP_IF_RUNNING if skip_if_running is None else skip_if_running
        self.ticks = 0
        self.skipped_ticks = 0
        self.failed_runs = 0
        self._in_flight: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def target_url(self) -> str:
        return f"{self.processor_url}/process-feeds"

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def _post(self, url: str) -> int:
        """POST to the trigger URL and return the HTTP status."""
        timeout = ClientTimeout(total=config.SCHEDULER_REQUEST_TIMEOUT)
        async with ClientSession(timeout=timeout) as session:
            async with session.post(url, headers={'User-Agent': config.USER_AGENT}) as response:
                body = await response.text()
                if response.status != 200:
                    logger.error(f"Trigger returned HTTP {response.status}: {body[:200]}")
                return response.status

    @trace_span("scheduler.trigger", tracer_name="scheduler")
    async def trigger_once(self) -> bool:
        """Fire one feed-processing run; returns True and records liveness on HTTP 200."""
        started = datetime.now(timezone.utc)
        try:
            status = await self._post(self.target_url)
        except (ClientError, asyncio.TimeoutError) as e:
            self.failed_runs += 1
            logger.error(f"💥 Scheduled feed processing request failed: {type(e).__name__}: {e}")
            return False
        except Exception as e:
            self.failed_runs += 1
            logger.error(f"💥 Unexpected error triggering feed processing: {e}")
            return False

        duration = (datetime.now(timezone.utc) - started).total_seconds()
        if status == 200:
            self.liveness.mark_success()
            logger.info(f"✅ Scheduled feed processing completed in {format_duration(duration)}")
            return True
        self.failed_runs += 1
        logger.error(f"❌ Scheduled feed processing failed with HTTP {status} after {format_duration(duration)}")
        return False

    def tick(self) -> Optional[asyncio.Task]:
        """Start one run in the background; returns its task, or None when skipped."""
        self.ticks += 1
        if self._in_flight and self.skip_if_running:
            self.skipped_ticks += 1
            logger.warning(f"⏭️ Previous feed processing run still in flight; skipping tick {self.ticks}")
            return None
        task = asyncio.create_task(self.trigger_once())
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def run_forever(self) -> None:
        """Tick every interval until cancelled."""
        logger.info(f"🚀 Scheduler started: POST {self.target_url} every {format_duration(self.interval_seconds)}")
        if config.SCHEDULER_RUN_IMMEDIATELY:
            self.tick()
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                self.tick()
            except asyncio.CancelledError:
                logger.info("📶 Scheduler cancelled - shutting down")
                break
            except Exception as e:
                logger.error(f"💥 Error in scheduler loop: {e}")

    def start(self) -> asyncio.Task:
        if not self.running:
            self._loop_task = asyncio.create_task(self.run_forever())
        return self._loop_task

    async def stop(self) -> None:
        """Stop ticking and cancel any run still in flight."""
        tasks = list(self._in_flight)
        if self._loop_task:
            tasks.append(self._loop_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        self._in_flight.clear()

    def get_status(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'target_url': self.target_url,
            'interval_seconds': self.interval_seconds,
            'ticks': self.ticks,
            'skipped_ticks': self.skipped_ticks,
            'failed_runs': self.failed_runs,
            'in_flight': len(self._in_flight),
        }


def create_scheduler(liveness: Optional[LivenessState] = None) -> FeedScheduler:
    """Create a FeedScheduler configured from the environment."""
    return FeedScheduler(liveness)
