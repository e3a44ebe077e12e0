#!/usr/bin/env python3
"""
Status-page feed fetcher and event ingester.

This module fetches every monitored service's RSS/Atom feed, parses it with
feedparser and upserts each item into `service_events`, keyed by
(service_id, guid). Items are written in fixed-size groups: members of a group
run concurrently, groups run one after another, and one failing item never
aborts its siblings or the rest of the feed.
"""

from asyncio import get_event_loop, wait_for, TimeoutError, Semaphore, gather
from calendar import timegm
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from functools import partial
from hashlib import md5
from typing import Any, Dict, List, Optional
import re

import feedparser
from aiohttp import ClientSession, ClientError, ClientTimeout

from config import config, get_logger
from errors import ProcessingError, UpstreamError, ParseError, ValidationError, describe_error
from models import DatabaseQueue
from telemetry import get_tracer, init_telemetry, trace_span
from utils import chunked, to_iso8601

logger = get_logger("fetcher")
init_telemetry("status-processor-fetcher")
_tracer = get_tracer("fetcher")

HTTP_OK = 200


class FeedFetcher:
    """Fetches service feeds and ingests their items as events."""

    def __init__(self, db: Optional[DatabaseQueue] = None) -> None:
        self.executor = ThreadPoolExecutor()
        self.db = db
        self._owns_db = False

    async def initialize(self) -> None:
        """Open the database connection unless one was injected."""
        if self.db is None:
            self.db = DatabaseQueue(config.DATABASE_PATH)
            await self.db.start()
            self._owns_db = True
        logger.info("FeedFetcher initialized")

    async def close(self) -> None:
        """Close connections and clean up resources."""
        if self.db and self._owns_db:
            await self.db.stop()
        if self.executor:
            try:
                await wait_for(
                    get_event_loop().run_in_executor(None, lambda: self.executor.shutdown(wait=True)),
                    timeout=30.0,
                )
            except TimeoutError:
                logger.warning("Thread pool executor shutdown timed out after 30 seconds")
                self.executor.shutdown(wait=False)
        logger.info("FeedFetcher closed")

    async def run_in_executor(self, func, *args) -> Any:
        """Run a blocking function in the thread pool executor."""
        loop = get_event_loop()
        return await loop.run_in_executor(self.executor, partial(func, *args))

    async def register_services(self) -> int:
        """Register every service from services.yaml; returns how many were registered."""
        for slug, url in config.SERVICE_SOURCES.items():
            await self.db.execute('register_service', slug=slug, feed_url=url)
        return len(config.SERVICE_SOURCES)

    # ------------------------------------------------------------------
    # Feed source
    # ------------------------------------------------------------------
    @trace_span(
        "fetch_and_parse",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, session: {"feed.url": url},
    )
    async def fetch_and_parse(self, url: str, session: ClientSession) -> Dict[str, Any]:
        """Fetch a feed URL and parse it into {"title", "items"}.

        Makes exactly one attempt, bounded by HTTP_TIMEOUT.

        Raises:
            UpstreamError: network failure, timeout or non-200 response.
            ParseError: the document is not a usable feed.
        """
        try:
            async with session.get(
                url,
                headers={'User-Agent': config.USER_AGENT},
                timeout=ClientTimeout(total=config.HTTP_TIMEOUT),
                max_redirects=config.MAX_REDIRECTS,
            ) as response:
                if response.status != HTTP_OK:
                    raise UpstreamError(f"HTTP {response.status} from {url}", {"status": response.status})
                content = await response.read()
        except TimeoutError as e:
            raise UpstreamError(f"Timed out after {config.HTTP_TIMEOUT}s fetching {url}") from e
        except ClientError as e:
            raise UpstreamError(f"Network error fetching {url}: {self._format_client_error(e)}") from e

        return await self.parse_feed(content, url)

    async def parse_feed(self, content: bytes, url: str = "") -> Dict[str, Any]:
        """Parse raw feed bytes into {"title", "items"} (feedparser runs in the executor)."""
        feedparser_options = {
            'sanitize_html': True,
            'resolve_relative_uris': True,
        }
        feed = await self.run_in_executor(lambda c: feedparser.parse(c, **feedparser_options), content)

        entries = feed.get('entries') or []
        if feed.get('bozo') and not entries:
            reason = feed.get('bozo_exception')
            raise ParseError(f"Could not parse feed {url}: {reason}")
        if feed.get('bozo'):
            logger.warning(f"Feed parsing warning for {url}: {feed.get('bozo_exception')}")

        title = (feed.get('feed') or {}).get('title')
        items = [self.entry_to_item(entry) for entry in entries]
        logger.debug(f"Parsed {len(items)} items from {url} ({feed.get('version') or 'unknown format'})")
        return {"title": title, "items": items}

    def entry_to_item(self, entry) -> Dict[str, Any]:
        """Map a feedparser entry onto a feed item dict: guid, title, content, iso_date."""
        title = self._get_entry_value(entry, 'title')
        title = title.strip() if isinstance(title, str) else None
        timestamp = self.parse_date_enhanced(entry)
        return {
            'guid': self.get_guid(entry),
            'title': title or None,
            'content': self.extract_content(entry),
            'iso_date': to_iso8601(timestamp) if timestamp is not None else None,
        }

    def get_guid(self, entry) -> str:
        """Extract or derive a stable GUID for an entry."""
        entry_id = self._get_entry_value(entry, 'id')
        if isinstance(entry_id, str) and entry_id.strip():
            return entry_id.strip()

        link = self._get_entry_value(entry, 'link')
        if isinstance(link, str) and link.strip():
            return link.strip()

        title = self._get_entry_value(entry, 'title')
        published = self._get_entry_value(entry, 'published')
        if title or published:
            combined = f"{title or ''}{published or ''}"
            return md5(combined.encode()).hexdigest()

        # No identity at all: upsert will reject it as a validation failure
        return ""

    def extract_content(self, entry) -> str:
        """Return the entry's raw HTML content: content[], then summary, then description."""
        contents = self._get_entry_value(entry, 'content')
        if contents:
            for content_item in contents:
                value = content_item.get('value') if hasattr(content_item, 'get') else None
                if value:
                    return value

        for field in ('summary', 'description'):
            value = self._get_entry_value(entry, field)
            if value:
                return value

        return ""

    def parse_date_enhanced(self, entry) -> Optional[int]:
        """Parse the publication date of an entry into a Unix timestamp.

        Tries the common date fields (and their feedparser *_parsed variants),
        then a date embedded in the entry id. Returns None when the entry
        carries no usable date.
        """
        date_fields = ['published', 'updated', 'created', 'modified', 'date', 'pubDate', 'isoDate', 'issued']

        for field in date_fields:
            timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, field))
            if timestamp:
                return timestamp

            timestamp = self._date_value_to_timestamp(self._get_entry_value(entry, f"{field}_parsed"))
            if timestamp:
                return timestamp

        entry_id = self._get_entry_value(entry, 'id')
        if isinstance(entry_id, str):
            match = re.search(r'(\d{4})[-/](\d{2})[-/](\d{2})', entry_id)
            if match:
                year, month, day = map(int, match.groups())
                try:
                    return int(datetime(year, month, day, tzinfo=timezone.utc).timestamp())
                except ValueError as e:
                    logger.debug(f"Failed to parse date components for '{entry_id}': {e}")

        return None

    def _get_entry_value(self, entry, field: str) -> Any:
        """Safely fetch feedparser entry fields with attribute or dict access."""
        if not field or entry is None:
            return None
        try:
            value = getattr(entry, field)
        except AttributeError:
            value = None

        if value is not None:
            return value

        getter = getattr(entry, 'get', None)
        if callable(getter):
            try:
                return getter(field)
            except KeyError:
                return None
        return None

    def _date_value_to_timestamp(self, value: Any) -> Optional[int]:
        """Convert assorted date representations into a Unix timestamp."""
        if value in (None, ''):
            return None

        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value) if value > 0 else None

        if isinstance(value, datetime):
            dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
            return int(dt.timestamp())

        if isinstance(value, (list, tuple)):
            # feedparser *_parsed values are UTC struct_time
            try:
                return int(timegm(tuple(value)))
            except (OverflowError, ValueError, TypeError):
                return None

        if isinstance(value, str):
            return self._parse_date_string(value)

        return None

    def _parse_date_string(self, date_str: str) -> Optional[int]:
        for parser in (self._parse_with_feedparser, self._parse_with_email_utils, self._parse_with_custom_formats):
            timestamp = parser(date_str)
            if timestamp is not None:
                return timestamp
        return None

    def _parse_with_feedparser(self, date_str: str) -> Optional[int]:
        try:
            time_struct = feedparser._parse_date(date_str)
            if time_struct:
                return int(timegm(time_struct))
        except (ValueError, TypeError, AttributeError, OverflowError):
            return None
        return None

    def _parse_with_email_utils(self, date_str: str) -> Optional[int]:
        try:
            dt = parsedate_to_datetime(date_str)
            if dt:
                if dt.tzinfo is None:
                    dt = dt.replace(tzinfo=timezone.utc)
                return int(dt.timestamp())
        except (TypeError, ValueError, OverflowError):
            return None
        return None

    def _parse_with_custom_formats(self, date_str: str) -> Optional[int]:
        for fmt in ("%d %b %Y %H:%M:%S %z", "%d %b %Y %H:%M:%S %Z", "%d %b %Y %H:%M:%S"):
            try:
                dt = datetime.strptime(date_str, fmt)
                if dt.tzinfo is None:
                    dt = dt.replace(tzinfo=timezone.utc)
                return int(dt.timestamp())
            except (ValueError, TypeError):
                continue
        return None

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            if errno is not None:
                parts.append(f"errno={errno}")
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------
    async def upsert_item(self, service_id: int, item: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or update one feed item as an event.

        Never raises: the outcome is {"guid", "ok": True, "event_id"} or
        {"guid", "ok": False, "error"}.
        """
        guid = item.get('guid') if isinstance(item, dict) else None
        guid = guid.strip() if isinstance(guid, str) else ""
        try:
            if not guid:
                raise ValidationError(f"Feed item for service {service_id} has no guid")
            event_id = await self.db.execute(
                'upsert_event',
                service_id=service_id,
                guid=guid,
                title=item.get('title'),
                description=item.get('content'),
                pub_date=item.get('iso_date'),
            )
            return {'guid': guid, 'ok': True, 'event_id': event_id}
        except ProcessingError as e:
            logger.warning(f"Upsert failed for service {service_id} item '{guid}': {describe_error(e)}")
            return {'guid': guid, 'ok': False, 'error': describe_error(e)}
        except Exception as e:
            logger.error(f"Unexpected error upserting service {service_id} item '{guid}': {describe_error(e)}")
            return {'guid': guid, 'ok': False, 'error': describe_error(e)}

    @trace_span(
        "ingest_items",
        tracer_name="fetcher",
        attr_from_args=lambda self, service_id, items, batch_size=None: {
            "service.id": str(service_id),
            "items.count": len(items) if items is not None else 0,
        },
    )
    async def ingest_items(self, service_id: int, items: List[Dict[str, Any]], batch_size: Optional[int] = None) -> Dict[str, Any]:
        """Upsert items group by group; returns {"service_id", "outcomes"} with one outcome per item.

        At most `batch_size` upserts are in flight at once: every member of a
        group settles before the next group starts.
        """
        size = batch_size if batch_size is not None else config.INGEST_BATCH_SIZE
        outcomes: List[Dict[str, Any]] = []
        for group in chunked(items or [], size):
            results = await gather(*(self.upsert_item(service_id, item) for item in group), return_exceptions=True)
            for item, result in zip(group, results):
                if isinstance(result, BaseException):
                    guid = item.get('guid') if isinstance(item, dict) else None
                    result = {'guid': guid or "", 'ok': False, 'error': describe_error(result)}
                outcomes.append(result)
        return {'service_id': service_id, 'outcomes': outcomes}

    async def process_service(self, service: Dict[str, Any], session: ClientSession, semaphore: Optional[Semaphore] = None) -> Dict[str, Any]:
        """Fetch, parse and ingest one service's feed; failures are recorded, not raised."""
        slug = service.get('slug') or str(service['id'])
        result = {'slug': slug, 'items': 0, 'succeeded': 0, 'failed': 0, 'error': None}
        try:
            if semaphore is not None:
                async with semaphore:
                    parsed = await self.fetch_and_parse(service['feed_url'], session)
            else:
                parsed = await self.fetch_and_parse(service['feed_url'], session)
        except ProcessingError as e:
            logger.error(f"Feed for {slug} failed: {describe_error(e)}")
            result['error'] = describe_error(e)
            return result

        if parsed.get('title') and parsed['title'] != service.get('title'):
            try:
                await self.db.execute('update_service_title', service_id=service['id'], title=parsed['title'])
            except ProcessingError as e:
                logger.warning(f"Could not update title for {slug}: {e}")

        items = parsed.get('items') or []
        ingested = await self.ingest_items(service['id'], items)
        succeeded = sum(1 for outcome in ingested['outcomes'] if outcome.get('ok'))
        result.update(items=len(items), succeeded=succeeded, failed=len(items) - succeeded)
        logger.info(f"Ingested {succeeded}/{len(items)} items for {slug}")
        return result

    @trace_span("process_all_feeds", tracer_name="fetcher")
    async def process_all_feeds(self, session: Optional[ClientSession] = None) -> Dict[str, Any]:
        """Fetch and ingest every service's feed concurrently.

        Per-service failures are recorded in the report. Only a failure to
        register or list services propagates.
        """
        logger.info("Starting feed processing")
        await self.register_services()
        services = await self.db.execute('list_services')

        limit = config.FEED_FETCH_CONCURRENCY
        semaphore = Semaphore(limit) if limit > 0 else None

        if session is None:
            async with ClientSession() as own_session:
                results = await gather(
                    *(self.process_service(service, own_session, semaphore) for service in services),
                    return_exceptions=True,
                )
        else:
            results = await gather(
                *(self.process_service(service, session, semaphore) for service in services),
                return_exceptions=True,
            )

        report: Dict[str, Any] = {'services': len(services), 'succeeded': 0, 'failed': 0, 'items': 0, 'results': {}}
        for service, result in zip(services, results):
            if isinstance(result, BaseException):
                result = {'slug': service.get('slug'), 'items': 0, 'succeeded': 0, 'failed': 0, 'error': describe_error(result)}
            report['results'][service['id']] = result
            report['items'] += result['items']
            if result['error']:
                report['failed'] += 1
            else:
                report['succeeded'] += 1

        logger.info(
            "Processed %d services (%d ok, %d failed), %d items",
            report['services'], report['succeeded'], report['failed'], report['items'],
        )
        return report


def format_feed_report(report: Dict[str, Any]) -> str:
    """Render a fan-out report as the one-line text returned by /process-feeds."""
    upserted = sum(r['succeeded'] for r in report['results'].values())
    return (
        f"Processed {report['services']} services ({report['succeeded']} ok, {report['failed']} failed); "
        f"upserted {upserted}/{report['items']} items"
    )
