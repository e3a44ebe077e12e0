import httpx
import pytest

from config import config
from errors import DatastoreError, NotFoundError, SummarizationError
from fetcher import FeedFetcher
from scheduler import LivenessState
from server import create_app
from summarizer import EventSummarizer

FEED_REPORT = {
    'services': 3,
    'succeeded': 2,
    'failed': 1,
    'items': 5,
    'results': {
        1: {'slug': 'github', 'items': 3, 'succeeded': 3, 'failed': 0, 'error': None},
        2: {'slug': 'openai', 'items': 0, 'succeeded': 0, 'failed': 0, 'error': 'UpstreamError: HTTP 503'},
        3: {'slug': 'slack', 'items': 2, 'succeeded': 1, 'failed': 1, 'error': None},
    },
}


class FakeFetcher:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0

    async def process_all_feeds(self):
        self.calls += 1
        if self.error:
            raise self.error
        return FEED_REPORT


class FakeSummarizer:
    def __init__(self, error=None):
        self.error = error
        self.summarized = []

    async def summarize_all(self):
        if self.error:
            raise self.error
        return {'attempted': 4, 'succeeded': 3, 'failed': 1, 'failed_ids': [9], 'errors': {9: 'ParseError: bad'}}

    async def summarize_event_by_id(self, event_id):
        self.summarized.append(event_id)
        if self.error:
            raise self.error
        return {'status': 'resolved', 'translated_description': '<p>x</p>', 'accumulated_time_minutes': 5, 'severity': 'minor'}


def _client(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_process_feeds_returns_report_text():
    fetcher = FakeFetcher()
    app = create_app(fetcher=fetcher, summarizer=FakeSummarizer(), scheduler_enabled=False)

    async with _client(app) as client:
        response = await client.post("/process-feeds")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "Processed 3 services" in response.text
    assert "upserted 4/5 items" in response.text
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_process_feeds_failure_is_500_text():
    app = create_app(
        fetcher=FakeFetcher(error=DatastoreError("database is locked")),
        summarizer=FakeSummarizer(),
        scheduler_enabled=False,
    )

    async with _client(app) as client:
        response = await client.post("/process-feeds")

    assert response.status_code == 500
    assert "DatastoreError: database is locked" in response.text


@pytest.mark.asyncio
async def test_process_events_reports_failures():
    app = create_app(fetcher=FakeFetcher(), summarizer=FakeSummarizer(), scheduler_enabled=False)

    async with _client(app) as client:
        response = await client.post("/process-events")

    assert response.status_code == 200
    assert "Summarized 3 of 4 events" in response.text
    assert "9" in response.text


@pytest.mark.asyncio
async def test_process_events_failure_is_500():
    app = create_app(
        fetcher=FakeFetcher(),
        summarizer=FakeSummarizer(error=DatastoreError("no such table")),
        scheduler_enabled=False,
    )

    async with _client(app) as client:
        response = await client.post("/process-events")

    assert response.status_code == 500


@pytest.mark.asyncio
async def test_summarize_event_success():
    summarizer = FakeSummarizer()
    app = create_app(fetcher=FakeFetcher(), summarizer=summarizer, scheduler_enabled=False)

    async with _client(app) as client:
        response = await client.post("/summarize-event", json={"eventId": 42})

    assert response.status_code == 200
    assert response.text == "Event 42 summarized: status=resolved, severity=minor"
    assert summarizer.summarized == [42]


@pytest.mark.asyncio
async def test_summarize_event_failure_is_500_text():
    error = SummarizationError(42, NotFoundError("Event 42 not found"))
    app = create_app(fetcher=FakeFetcher(), summarizer=FakeSummarizer(error=error), scheduler_enabled=False)

    async with _client(app) as client:
        response = await client.post("/summarize-event", json={"eventId": 42})

    assert response.status_code == 500
    assert response.text == "Failed to summarize event 42: NotFoundError: Event 42 not found"


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [{}, {"eventId": "not-a-number"}, {"id": 3}])
async def test_malformed_summarize_request_is_500(body):
    summarizer = FakeSummarizer()
    app = create_app(fetcher=FakeFetcher(), summarizer=summarizer, scheduler_enabled=False)

    async with _client(app) as client:
        response = await client.post("/summarize-event", json=body)

    assert response.status_code == 500
    assert response.text.startswith("Invalid request")
    assert summarizer.summarized == []


@pytest.mark.asyncio
async def test_health_reports_last_successful_run():
    liveness = LivenessState()
    app = create_app(fetcher=FakeFetcher(), summarizer=FakeSummarizer(), liveness=liveness, scheduler_enabled=False)

    async with _client(app) as client:
        before = (await client.get("/health")).json()
        liveness.mark_success()
        after = (await client.get("/health")).json()

    assert before["status"] == "ok"
    assert before["last_successful_run"] is None
    assert before["scheduler"] is None
    assert after["last_successful_run"] is not None


@pytest.mark.asyncio
async def test_lifespan_closes_the_components_it_created(tmp_path, monkeypatch):
    monkeypatch.setattr(config, 'DATABASE_PATH', str(tmp_path / "status.db"))
    closed = []

    async def record_fetcher_close(self):
        closed.append('fetcher')

    async def record_summarizer_close(self):
        closed.append('summarizer')

    monkeypatch.setattr(FeedFetcher, 'close', record_fetcher_close)
    monkeypatch.setattr(EventSummarizer, 'close', record_summarizer_close)

    app = create_app(scheduler_enabled=False)
    async with app.router.lifespan_context(app):
        assert isinstance(app.state.summarizer, EventSummarizer)
    assert sorted(closed) == ['fetcher', 'summarizer']

    closed.clear()
    injected = FakeSummarizer()
    app = create_app(summarizer=injected, scheduler_enabled=False)
    async with app.router.lifespan_context(app):
        assert app.state.summarizer is injected
    assert closed == ['fetcher']
