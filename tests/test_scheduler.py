import asyncio

import pytest
from aiohttp import ClientConnectionError

from config import config
from scheduler import FeedScheduler, LivenessState


class FakeScheduler(FeedScheduler):
    """FeedScheduler whose HTTP call is replaced by a scripted response."""

    def __init__(self, status=200, error=None, delay=0.0, **kwargs):
        super().__init__(processor_url="http://processor.test/", **kwargs)
        self.status = status
        self.error = error
        self.delay = delay
        self.posted = []

    async def _post(self, url):
        self.posted.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.status


def test_liveness_starts_empty():
    liveness = LivenessState()
    assert liveness.last_success is None
    assert liveness.snapshot() == {'last_successful_run': None, 'seconds_since_last_success': None}


@pytest.mark.asyncio
async def test_successful_run_marks_liveness():
    liveness = LivenessState()
    scheduler = FakeScheduler(liveness=liveness)

    assert await scheduler.trigger_once() is True

    assert scheduler.posted == ["http://processor.test/process-feeds"]
    assert liveness.last_success is not None
    assert liveness.snapshot()['last_successful_run'] is not None


@pytest.mark.asyncio
async def test_http_failure_is_logged_not_raised():
    liveness = LivenessState()
    scheduler = FakeScheduler(status=500, liveness=liveness)

    assert await scheduler.trigger_once() is False

    assert liveness.last_success is None
    assert scheduler.failed_runs == 1


@pytest.mark.asyncio
async def test_network_failure_is_logged_not_raised():
    scheduler = FakeScheduler(error=ClientConnectionError("connection refused"))

    assert await scheduler.trigger_once() is False
    assert scheduler.liveness.last_success is None


@pytest.mark.asyncio
async def test_failure_keeps_previous_success():
    liveness = LivenessState()
    ok = FakeScheduler(liveness=liveness)
    await ok.trigger_once()
    first = liveness.last_success

    failing = FakeScheduler(status=502, liveness=liveness)
    await failing.trigger_once()

    assert liveness.last_success == first


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped():
    scheduler = FakeScheduler(delay=0.05, skip_if_running=True)

    first = scheduler.tick()
    second = scheduler.tick()

    assert first is not None
    assert second is None
    assert scheduler.skipped_ticks == 1
    await first

    third = scheduler.tick()
    assert third is not None
    await third
    assert len(scheduler.posted) == 2


@pytest.mark.asyncio
async def test_overlap_allowed_when_skipping_disabled():
    scheduler = FakeScheduler(delay=0.05, skip_if_running=False)

    tasks = [scheduler.tick(), scheduler.tick()]

    assert all(task is not None for task in tasks)
    await asyncio.gather(*tasks)
    assert len(scheduler.posted) == 2
    assert scheduler.skipped_ticks == 0


@pytest.mark.asyncio
async def test_run_forever_ticks_until_stopped(monkeypatch):
    monkeypatch.setattr(config, 'SCHEDULER_RUN_IMMEDIATELY', False)
    scheduler = FakeScheduler(interval_seconds=0.01)

    scheduler.start()
    await asyncio.sleep(0.1)
    assert scheduler.running
    await scheduler.stop()

    assert not scheduler.running
    assert scheduler.ticks >= 2
    assert scheduler.liveness.last_success is not None
    status = scheduler.get_status()
    assert status['target_url'] == "http://processor.test/process-feeds"
    assert status['in_flight'] == 0


@pytest.mark.asyncio
async def test_run_forever_survives_failures(monkeypatch):
    monkeypatch.setattr(config, 'SCHEDULER_RUN_IMMEDIATELY', True)
    scheduler = FakeScheduler(status=503, interval_seconds=0.01)

    scheduler.start()
    await asyncio.sleep(0.08)
    await scheduler.stop()

    assert scheduler.failed_runs >= 2
    assert scheduler.liveness.last_success is None
