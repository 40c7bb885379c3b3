#!/usr/bin/env python3
"""
Database models and operations for the ingestion pipeline.

All SQLite access goes through a single asyncio worker that owns the
connection, so writes from concurrently refreshing sources are serialized.
Callers queue named operations with ``await db.execute('op', **params)``.
"""

from os import path, access, R_OK
from time import time
import json
from sqlite3 import connect, Row
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any, Sequence

from config import config, get_logger
from errors import PersistenceError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")

SOURCE_COLUMNS = (
    "id", "url", "title", "description", "category", "content_mode", "is_active",
    "sort_order", "error_count", "last_error", "last_fetch_at", "article_count", "unread_count",
)
UPDATABLE_SOURCE_FIELDS = ("url", "title", "description", "category", "content_mode", "is_active", "sort_order")
ARTICLE_COLUMNS = (
    "source_id", "source_name", "title", "url", "guid", "author", "category", "content", "summary",
    "word_count", "reading_time", "published_at", "image_url", "image_caption", "image_credit",
)


def initialize_database(conn) -> None:
    """Create any missing tables and indexes from the schema file."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='sources'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
        cursor.executescript(_read_schema_file())
        conn.commit()
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    try:
        if not path.isfile(schema_path):
            raise FileNotFoundError(f"Schema file not found at {schema_path}")

        if not access(schema_path, R_OK):
            raise PermissionError(f"No read permission for schema file at {schema_path}")

        # Check file size to prevent reading extremely large files
        file_size = path.getsize(schema_path)
        max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
        if file_size > max_size:
            raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

        with open(schema_path, 'r') as f:
            return f.read()
    except Exception as e:
        logger.error(f"Error reading schema file: {e}")
        raise


def _rows(cursor) -> List[Dict[str, Any]]:
    return [dict(row) for row in cursor.fetchall()]


class DatabaseQueue:
    """A queue for database operations to ensure serialized access."""

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
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        if self.worker_task.done():
            self.running = False
            # Surfaces the connection/schema error
            self.worker_task.result()
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

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.info(f"Using existing database at {self.db_path}")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            initialize_database(self.conn)
        finally:
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
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.conn.rollback()
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break
            except Exception as e:
                logger.error(f"Unexpected error in database worker: {e}")

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
        """Queue a named database operation and wait for its result.

        Raises:
            PersistenceError: if the operation failed or the worker is stopped.
        """
        if not self.running:
            raise PersistenceError(f"Database worker not running (operation {operation_name})")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise PersistenceError(f"Database worker stopped before {operation_name} completed")
            if "error" in result:
                raise PersistenceError(result["error"], details={"operation": operation_name})
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Generic relational interface
    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run a SELECT and return rows as dicts."""
        cursor = self.conn.execute(sql, tuple(params))
        try:
            return _rows(cursor)
        finally:
            cursor.close()

    def statement(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a write statement and return the affected row count."""
        cursor = self.conn.execute(sql, tuple(params))
        self.conn.commit()
        return cursor.rowcount

    def insert(self, sql: str, params: Sequence[Any] = ()) -> Optional[int]:
        """Run an INSERT and return the new row id (None when ignored)."""
        cursor = self.conn.execute(sql, tuple(params))
        self.conn.commit()
        return cursor.lastrowid if cursor.rowcount > 0 else None

    # Source Management Operations
    def add_source(self, url: str, title: str, description: str = "", category: str = "General",
                   content_mode: str = "image_text", is_active: bool = True) -> int:
        """Insert a source at the end of the ordering and return its id."""
        cursor = self.conn.execute("SELECT COALESCE(MAX(sort_order), -1) + 1 FROM sources")
        next_order = cursor.fetchone()[0]
        cursor = self.conn.execute(
            "INSERT INTO sources (url, title, description, category, content_mode, is_active, sort_order) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (url, title, description, category, content_mode, 1 if is_active else 0, next_order),
        )
        self.conn.commit()
        return cursor.lastrowid

    def get_source(self, source_id: int) -> Optional[Dict[str, Any]]:
        rows = self.query(f"SELECT {', '.join(SOURCE_COLUMNS)} FROM sources WHERE id = ?", (source_id,))
        return rows[0] if rows else None

    def get_source_by_url(self, url: str) -> Optional[Dict[str, Any]]:
        rows = self.query(f"SELECT {', '.join(SOURCE_COLUMNS)} FROM sources WHERE url = ?", (url,))
        return rows[0] if rows else None

    def list_sources(self, active_only: bool = True) -> List[Dict[str, Any]]:
        """List sources in display order."""
        where = "WHERE is_active = 1" if active_only else ""
        return self.query(f"SELECT {', '.join(SOURCE_COLUMNS)} FROM sources {where} ORDER BY sort_order, id")

    def update_source(self, source_id: int, fields: Dict[str, Any]) -> bool:
        """Update whitelisted source columns."""
        updates = {k: v for k, v in fields.items() if k in UPDATABLE_SOURCE_FIELDS}
        if not updates:
            return False
        if "is_active" in updates:
            updates["is_active"] = 1 if updates["is_active"] else 0
        assignments = ", ".join(f"{column} = ?" for column in updates)
        return self.statement(
            f"UPDATE sources SET {assignments} WHERE id = ?",
            list(updates.values()) + [source_id],
        ) > 0

    def reorder_sources(self, source_ids: List[int]) -> int:
        """Assign sort_order following the given id sequence."""
        cursor = self.conn.cursor()
        for position, source_id in enumerate(source_ids):
            cursor.execute("UPDATE sources SET sort_order = ? WHERE id = ?", (position, source_id))
        self.conn.commit()
        return len(source_ids)

    def delete_source(self, source_id: int) -> bool:
        """Delete a source; its articles go with it via ON DELETE CASCADE."""
        return self.statement("DELETE FROM sources WHERE id = ?", (source_id,)) > 0

    # Error Tracking Operations
    def record_source_error(self, source_id: int, last_error: str) -> int:
        """Increment the error count and store the latest message."""
        self.statement(
            "UPDATE sources SET error_count = error_count + 1, last_error = ?, last_fetch_at = ? WHERE id = ?",
            (last_error[:1000], int(time()), source_id),
        )
        rows = self.query("SELECT error_count FROM sources WHERE id = ?", (source_id,))
        return rows[0]["error_count"] if rows else 0

    def reset_source_error(self, source_id: int) -> bool:
        return self.statement(
            "UPDATE sources SET error_count = 0, last_error = NULL WHERE id = ? AND error_count > 0",
            (source_id,),
        ) > 0

    # Article Operations
    def get_recent_articles(self, source_id: int, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recently published stored articles for a source (diff window)."""
        return self.query(
            "SELECT url, title, published_at FROM articles WHERE source_id = ? "
            "ORDER BY published_at DESC LIMIT ?",
            (source_id, limit),
        )

    def article_exists(self, source_id: int, url: str) -> bool:
        rows = self.query("SELECT 1 FROM articles WHERE source_id = ? AND url = ? LIMIT 1", (source_id, url))
        return bool(rows)

    def insert_article(self, article: Dict[str, Any]) -> Optional[int]:
        """Insert an article unless (source_id, url) already exists.

        Returns:
            The new article id, or None when the row was a duplicate.
        """
        values = [article.get(column) for column in ARTICLE_COLUMNS]
        placeholders = ", ".join("?" for _ in ARTICLE_COLUMNS)
        return self.insert(
            f"INSERT OR IGNORE INTO articles ({', '.join(ARTICLE_COLUMNS)}, tags) VALUES ({placeholders}, ?)",
            values + [json.dumps(article.get("tags") or [])],
        )

    def update_source_stats(self, source_id: int) -> Dict[str, int]:
        """Stamp the fetch time and recompute total/unread article counts."""
        counts = self.query(
            "SELECT COUNT(*) AS article_count, "
            "COALESCE(SUM(CASE WHEN is_read = 0 THEN 1 ELSE 0 END), 0) AS unread_count "
            "FROM articles WHERE source_id = ?",
            (source_id,),
        )[0]
        self.statement(
            "UPDATE sources SET last_fetch_at = ?, article_count = ?, unread_count = ? WHERE id = ?",
            (int(time()), counts["article_count"], counts["unread_count"], source_id),
        )
        return counts

    def count_articles(self, source_id: Optional[int] = None) -> int:
        """Return the number of stored articles, optionally for one source."""
        if source_id is None:
            rows = self.query("SELECT COUNT(*) AS n FROM articles")
        else:
            rows = self.query("SELECT COUNT(*) AS n FROM articles WHERE source_id = ?", (source_id,))
        return int(rows[0]["n"]) if rows else 0

    def count_article_urls(self, source_id: int) -> Dict[str, int]:
        """Map each stored URL of a source to its row count (dedup checks)."""
        rows = self.query(
            "SELECT url, COUNT(*) AS n FROM articles WHERE source_id = ? GROUP BY url",
            (source_id,),
        )
        return {row["url"]: row["n"] for row in rows}
