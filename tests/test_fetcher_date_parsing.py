import asyncio
from datetime import datetime, timezone

import pytest

from fetcher import FeedFetcher
from models import DatabaseQueue


class DummyEntry(dict):
    """Dict that also exposes attributes like feedparser entries."""

    def __getattr__(self, item):
        try:
            return self[item]
        except KeyError as exc:  # pragma: no cover - mirrors feedparser behavior
            raise AttributeError(item) from exc


def test_parse_date_without_weekday():
    fetcher = FeedFetcher()
    entry = DummyEntry(
        pubDate="17 Nov 2025 00:00:00 +0000",
        id="https://status.example.com/incidents/abc123",
    )

    timestamp = fetcher.parse_date_enhanced(entry)

    expected = int(datetime(2025, 11, 17, tzinfo=timezone.utc).timestamp())
    assert timestamp == expected


def test_parse_statuspage_style_date_with_weekday():
    fetcher = FeedFetcher()
    entry = DummyEntry(
        published="Sat, 15 Nov 2025 16:00:00 +0000",
        id="https://www.githubstatus.com/incidents/x1y2z3",
    )

    timestamp = fetcher.parse_date_enhanced(entry)

    expected = int(datetime(2025, 11, 15, 16, 0, tzinfo=timezone.utc).timestamp())
    assert timestamp == expected


def test_parsed_struct_is_treated_as_utc():
    fetcher = FeedFetcher()
    parsed = datetime(2024, 1, 10, 14, 5, tzinfo=timezone.utc).timetuple()
    entry = DummyEntry(updated_parsed=parsed)

    timestamp = fetcher.parse_date_enhanced(entry)

    assert timestamp == int(datetime(2024, 1, 10, 14, 5, tzinfo=timezone.utc).timestamp())


def test_date_embedded_in_id_is_used_when_no_date_field():
    fetcher = FeedFetcher()
    entry = DummyEntry(id="https://status.example.com/2024/03/02/maintenance")

    timestamp = fetcher.parse_date_enhanced(entry)

    assert timestamp == int(datetime(2024, 3, 2, tzinfo=timezone.utc).timestamp())


def test_missing_date_is_none():
    fetcher = FeedFetcher()

    assert fetcher.parse_date_enhanced(DummyEntry(title="No dates here")) is None
    assert fetcher.entry_to_item(DummyEntry(id="g1", title="No dates here"))["iso_date"] is None


@pytest.mark.asyncio
async def test_dateless_item_reingested_later_is_unchanged(tmp_path):
    db = DatabaseQueue(str(tmp_path / "status.db"))
    await db.start()
    try:
        service_id = await db.execute('register_service', slug='svc', feed_url='https://svc/feed')
        fetcher = FeedFetcher(db)
        entry = DummyEntry(id="g1", title="Scheduled maintenance", summary="<p>Planned</p>")

        first = await fetcher.ingest_items(service_id, [fetcher.entry_to_item(entry)])
        event_id = first["outcomes"][0]["event_id"]
        before = await db.execute('get_event', event_id=event_id)

        await asyncio.sleep(1.1)
        await fetcher.ingest_items(service_id, [fetcher.entry_to_item(entry)])
        after = await db.execute('get_event', event_id=event_id)

        assert before["pub_date"] is None
        assert after["pub_date"] is None
        assert after["updated_at"] == before["updated_at"]
        assert after == before
    finally:
        await db.stop()


def test_item_iso_date_is_utc_with_z_suffix():
    fetcher = FeedFetcher()
    entry = DummyEntry(
        id="incident-1",
        title="Elevated error rates",
        published="Wed, 10 Jan 2024 15:05:00 +0100",
        summary="<p>Investigating</p>",
    )

    item = fetcher.entry_to_item(entry)

    assert item["iso_date"] == "2024-01-10T14:05:00Z"
