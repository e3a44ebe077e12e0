#!/usr/bin/env python3
"""
Database models and operations for the status feed processor.

This module contains all database-related classes and functions, providing a
clean separation between data access and business logic. All access goes
through `DatabaseQueue.execute(operation_name, **params)`, which serializes
operations onto a single SQLite connection owned by a worker coroutine.
"""

from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row, Error, IntegrityError
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any

from config import config, get_logger
from errors import ProcessingError, DatastoreError, PersistError, ValidationError
from telemetry import get_tracer, trace_span

logger = get_logger("models")
_tracer = get_tracer("db")

# Structured fields written by the event summarizer
SUMMARY_FIELDS = ("status", "translated_description", "accumulated_time_minutes", "severity")

EVENT_COLUMNS = (
    "id, service_id, guid, title, description, pub_date, status, translated_description, "
    "accumulated_time_minutes, severity, created_at, updated_at"
)


def initialize_database(conn) -> None:
    """Initialize the database with the schema from schema.sql and run migrations."""
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='service_events'")
        events_table_exists = cursor.fetchone() is not None

        if not events_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            _run_migrations(conn)
    except Error as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Add structured summary columns to databases created before summarization existed."""
    cursor = conn.cursor()
    try:
        cursor.execute("PRAGMA table_info(service_events)")
        columns = {row[1] for row in cursor.fetchall()}
        additions = {
            "status": "TEXT",
            "translated_description": "TEXT",
            "accumulated_time_minutes": "INTEGER",
            "severity": "TEXT",
        }
        for column, column_type in additions.items():
            if column not in columns:
                logger.info(f"Adding {column} column to service_events table")
                cursor.execute(f"ALTER TABLE service_events ADD COLUMN {column} {column_type}")
        conn.commit()
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")
    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r') as f:
        return f.read()


def _row_to_event(row) -> Dict[str, Any]:
    return {key: row[key] for key in row.keys()}


class DatabaseQueue:
    """A queue for database operations to ensure a single writer."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready = Event()

    async def start(self) -> None:
        """Start the database worker and wait until the schema is in place."""
        if self.running:
            return

        self.running = True
        self._ready.clear()
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        if self.conn is None:
            self.running = False
            raise DatastoreError(f"Could not open database at {self.db_path}")
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release any waiters so nothing hangs on shutdown
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    def _open(self) -> None:
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.info(f"Using existing database at {self.db_path}")
        conn = connect(self.db_path)
        conn.row_factory = Row
        conn.execute("PRAGMA foreign_keys = ON")
        initialize_database(conn)
        self.conn = conn

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        try:
            self._open()
        except (Error, OSError, ValueError) as e:
            logger.error(f"Failed to open database {self.db_path}: {e}")
            self.conn = None
            self._ready.set()
            return
        self._ready.set()

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith("_") or not callable(method):
                        self.results[operation_id] = {"error": DatastoreError(f"Unknown operation: {operation_name}")}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": e}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation.

        Raises:
            ProcessingError subclasses raised by the operation unchanged;
            any other failure is wrapped in DatastoreError.
        """
        if not self.running:
            raise DatastoreError("Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise DatastoreError(f"Database worker stopped before completing {operation_name}")
            if "error" in result:
                error = result["error"]
                if isinstance(error, ProcessingError):
                    raise error
                raise DatastoreError(f"{operation_name} failed: {error}") from error

            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    def _write(self, sql: str, params: tuple, what: str):
        """Run a single write statement and commit, mapping failures to PersistError."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(sql, params)
            self.conn.commit()
            return cursor.rowcount
        except IntegrityError as e:
            self.conn.rollback()
            raise PersistError(f"{what} rejected: {e}") from e
        except Error as e:
            self.conn.rollback()
            raise PersistError(f"{what} failed: {e}") from e
        finally:
            cursor.close()

    def _query(self, sql: str, params: tuple = ()) -> List[Row]:
        cursor = self.conn.cursor()
        try:
            cursor.execute(sql, params)
            return cursor.fetchall()
        finally:
            cursor.close()

    # Service Management Operations
    def register_service(self, slug: str, feed_url: str) -> int:
        """Insert a service or refresh its feed URL; returns the service id."""
        self._write(
            """
            INSERT INTO services (slug, feed_url) VALUES (?, ?)
            ON CONFLICT(slug) DO UPDATE SET feed_url = excluded.feed_url
            WHERE services.feed_url IS NOT excluded.feed_url
            """,
            (slug, feed_url),
            f"register service {slug}",
        )
        rows = self._query("SELECT id FROM services WHERE slug = ?", (slug,))
        return rows[0]["id"]

    def list_services(self) -> List[Dict[str, Any]]:
        """List all services as dicts with id, slug, feed_url and title."""
        rows = self._query("SELECT id, slug, feed_url, title FROM services ORDER BY id")
        return [dict(row) for row in rows]

    def update_service_title(self, service_id: int, title: str) -> bool:
        """Update the display title of a service."""
        return self._write(
            "UPDATE services SET title = ? WHERE id = ? AND title IS NOT ?",
            (title, service_id, title),
            f"update title of service {service_id}",
        ) > 0

    # Event Operations
    def upsert_event(self, service_id: int, guid: str, title: Optional[str], description: Optional[str], pub_date: Optional[str]) -> int:
        """Insert or update the event keyed by (service_id, guid); returns its id.

        Only title, description and pub_date are updated on conflict, and only
        when one of them changed; structured fields are never touched.
        """
        if not guid:
            raise ValidationError("guid must be non-empty")
        now = int(time())
        self._write(
            """
            INSERT INTO service_events (service_id, guid, title, description, pub_date, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(service_id, guid) DO UPDATE SET
                title = excluded.title,
                description = excluded.description,
                pub_date = excluded.pub_date,
                updated_at = excluded.updated_at
            WHERE service_events.title IS NOT excluded.title
               OR service_events.description IS NOT excluded.description
               OR service_events.pub_date IS NOT excluded.pub_date
            """,
            (service_id, guid, title, description, pub_date, now, now),
            f"upsert event {guid} for service {service_id}",
        )
        rows = self._query(
            "SELECT id FROM service_events WHERE service_id = ? AND guid = ?",
            (service_id, guid),
        )
        if not rows:
            raise PersistError(f"upsert of event {guid} for service {service_id} left no row")
        return rows[0]["id"]

    def get_event(self, event_id: int) -> Optional[Dict[str, Any]]:
        """Return one event row as a dict, or None if it does not exist."""
        rows = self._query(f"SELECT {EVENT_COLUMNS} FROM service_events WHERE id = ?", (event_id,))
        return _row_to_event(rows[0]) if rows else None

    def list_unsummarized_events(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return every event whose translated_description is still NULL, oldest first."""
        sql = f"SELECT {EVENT_COLUMNS} FROM service_events WHERE translated_description IS NULL ORDER BY id"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)
        return [_row_to_event(row) for row in self._query(sql, params)]

    def update_event(self, event_id: int, fields: Dict[str, Any]) -> int:
        """Write structured summary fields onto one event; returns the number of rows updated."""
        unknown = set(fields) - set(SUMMARY_FIELDS)
        if unknown:
            raise ValidationError(f"Refusing to update non-summary fields: {', '.join(sorted(unknown))}")
        if not fields:
            raise ValidationError("No fields to update")
        columns = [name for name in SUMMARY_FIELDS if name in fields]
        assignments = ", ".join(f"{name} = ?" for name in columns)
        values = tuple(fields[name] for name in columns)
        return self._write(
            f"UPDATE service_events SET {assignments}, updated_at = ? WHERE id = ?",
            values + (int(time()), event_id),
            f"update event {event_id}",
        )

    def count_events(self) -> Dict[str, int]:
        """Return service, event and unsummarized event counts."""
        rows = self._query(
            """
            SELECT
                (SELECT COUNT(*) FROM services) AS services,
                (SELECT COUNT(*) FROM service_events) AS events,
                (SELECT COUNT(*) FROM service_events WHERE translated_description IS NULL) AS unsummarized
            """
        )
        return dict(rows[0])
