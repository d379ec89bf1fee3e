"""Database layer for the ebook pipeline.

Supports two backends:
- PostgreSQL (production, set EBOOK_DATABASE_URL)
- SQLite (local development, default)

Uses raw SQL via psycopg2 (Postgres) or sqlite3 (SQLite) for simplicity.
No ORM.

Thread-safety: Postgres uses a ThreadedConnectionPool for efficient
connection reuse. SQLite uses per-call connections with check_same_thread=False,
so worker threads never share a connection.

The same database backs both the ebook records and the job queue, so a
single connectivity check covers everything the worker needs.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Default SQLite path (relative to the working directory)
DEFAULT_SQLITE_PATH = Path("data") / "ebooks.db"

SQLITE_TIMEOUT_SECONDS = 30.0


class Database:
    """Connection factory and SQL executor for one configured backend."""

    def __init__(self, url: str = "", sqlite_path: Optional[str | Path] = None):
        self.url = url or ""
        self.sqlite_path = Path(sqlite_path) if sqlite_path else DEFAULT_SQLITE_PATH
        self._pg_pool = None
        self._pool_lock = threading.Lock()
        self._initialized = False

    @property
    def is_postgres(self) -> bool:
        """Check if we're using Postgres."""
        return self.url.startswith("postgres")

    @property
    def backend_name(self) -> str:
        return "PostgreSQL" if self.is_postgres else f"SQLite ({self.sqlite_path})"

    def _get_pg_pool(self):
        """Get or create the Postgres connection pool (lazy)."""
        with self._pool_lock:
            if self._pg_pool is None:
                import psycopg2.pool
                self._pg_pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=1,
                    maxconn=5,
                    dsn=self.url,
                )
                logger.info("PostgreSQL connection pool initialized (1-5 connections)")
            return self._pg_pool

    @contextmanager
    def get_connection(self):
        """Get a database connection (Postgres or SQLite).

        Usage:
            with db.get_connection() as conn:
                cursor = conn.cursor()
                cursor.execute(...)
                conn.commit()
        """
        if self.is_postgres:
            pool = self._get_pg_pool()
            conn = pool.getconn()
            try:
                yield conn
            finally:
                pool.putconn(conn)
        else:
            self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.sqlite_path),
                timeout=SQLITE_TIMEOUT_SECONDS,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            try:
                yield conn
            finally:
                conn.close()

    def execute(self, sql: str, params: tuple = (), fetch: str = "none") -> Any:
        """Execute a SQL statement.

        Args:
            sql: SQL statement (use %s placeholders; adapted to ? for SQLite)
            params: Parameters tuple
            fetch: "none", "one", "all" or "rowcount"

        Returns:
            None for "none", dict for "one", list[dict] for "all",
            number of affected rows for "rowcount"
        """
        adapted_sql = sql if self.is_postgres else sql.replace("%s", "?")

        with self.get_connection() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(adapted_sql, params)
            except Exception:
                conn.rollback()
                raise

            if fetch == "none":
                conn.commit()
                return None
            elif fetch == "rowcount":
                count = cursor.rowcount
                conn.commit()
                return count
            elif fetch == "one":
                row = cursor.fetchone()
                conn.commit()
                if row is None:
                    return None
                if self.is_postgres:
                    columns = [desc[0] for desc in cursor.description]
                    return dict(zip(columns, row))
                return dict(row)
            elif fetch == "all":
                rows = cursor.fetchall()
                conn.commit()
                if self.is_postgres:
                    columns = [desc[0] for desc in cursor.description]
                    return [dict(zip(columns, row)) for row in rows]
                return [dict(row) for row in rows]

            raise ValueError(f"Unknown fetch mode: {fetch}")

    def ping(self) -> bool:
        """Round-trip a trivial query. Raises if the backend is unreachable."""
        row = self.execute("SELECT 1 AS ok", fetch="one")
        return bool(row) and int(row["ok"]) == 1

    def init_db(self) -> None:
        """Create tables if they don't exist."""
        if self._initialized:
            return

        if self.is_postgres:
            self._init_postgres()
        else:
            self._init_sqlite()

        self._initialized = True
        logger.info(f"Ebook pipeline database initialized: {self.backend_name}")

    def close(self) -> None:
        """Release pooled connections (no-op for SQLite)."""
        with self._pool_lock:
            if self._pg_pool is not None:
                self._pg_pool.closeall()
                self._pg_pool = None
                logger.info("PostgreSQL connection pool closed")

    def _init_postgres(self) -> None:
        """Create Postgres tables."""
        ddl = """
        CREATE TABLE IF NOT EXISTS ebooks (
            ebook_id VARCHAR(100) PRIMARY KEY,
            agency_id VARCHAR(100) NOT NULL,
            title VARCHAR(500) NOT NULL,
            metadata JSONB DEFAULT '{}',
            description JSONB,
            description_approved_at VARCHAR(40),
            content JSONB,
            pdf_url TEXT,
            status VARCHAR(30) NOT NULL DEFAULT 'CREATED',
            error TEXT,
            created_at VARCHAR(40) NOT NULL,
            updated_at VARCHAR(40) NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_ebooks_agency
            ON ebooks(agency_id, created_at);

        CREATE TABLE IF NOT EXISTS ebook_jobs (
            job_id VARCHAR(100) PRIMARY KEY,
            queue_name VARCHAR(100) NOT NULL,
            kind VARCHAR(20) NOT NULL,
            ebook_id VARCHAR(100) NOT NULL,
            agency_id VARCHAR(100) DEFAULT '',
            payload JSONB DEFAULT '{}',
            priority INTEGER NOT NULL DEFAULT 1,
            state VARCHAR(20) NOT NULL DEFAULT 'waiting',
            progress INTEGER NOT NULL DEFAULT 0,
            attempts_made INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            backoff_ms BIGINT NOT NULL DEFAULT 5000,
            available_at BIGINT NOT NULL,
            locked_by VARCHAR(100),
            locked_until BIGINT,
            return_value JSONB,
            failed_reason TEXT,
            persistence_warning TEXT,
            created_at BIGINT NOT NULL,
            processed_on BIGINT,
            finished_on BIGINT
        );

        CREATE INDEX IF NOT EXISTS idx_ebook_jobs_ready
            ON ebook_jobs(queue_name, state, priority, available_at);
        CREATE INDEX IF NOT EXISTS idx_ebook_jobs_ebook
            ON ebook_jobs(ebook_id);
        """
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(ddl)
            conn.commit()

    def _init_sqlite(self) -> None:
        """Create SQLite tables."""
        ddl = """
        CREATE TABLE IF NOT EXISTS ebooks (
            ebook_id TEXT PRIMARY KEY,
            agency_id TEXT NOT NULL,
            title TEXT NOT NULL,
            metadata TEXT DEFAULT '{}',
            description TEXT,
            description_approved_at TEXT,
            content TEXT,
            pdf_url TEXT,
            status TEXT NOT NULL DEFAULT 'CREATED',
            error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_ebooks_agency
            ON ebooks(agency_id, created_at);

        CREATE TABLE IF NOT EXISTS ebook_jobs (
            job_id TEXT PRIMARY KEY,
            queue_name TEXT NOT NULL,
            kind TEXT NOT NULL,
            ebook_id TEXT NOT NULL,
            agency_id TEXT DEFAULT '',
            payload TEXT DEFAULT '{}',
            priority INTEGER NOT NULL DEFAULT 1,
            state TEXT NOT NULL DEFAULT 'waiting',
            progress INTEGER NOT NULL DEFAULT 0,
            attempts_made INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            backoff_ms INTEGER NOT NULL DEFAULT 5000,
            available_at INTEGER NOT NULL,
            locked_by TEXT,
            locked_until INTEGER,
            return_value TEXT,
            failed_reason TEXT,
            persistence_warning TEXT,
            created_at INTEGER NOT NULL,
            processed_on INTEGER,
            finished_on INTEGER
        );

        CREATE INDEX IF NOT EXISTS idx_ebook_jobs_ready
            ON ebook_jobs(queue_name, state, priority, available_at);
        CREATE INDEX IF NOT EXISTS idx_ebook_jobs_ebook
            ON ebook_jobs(ebook_id);
        """
        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.executescript(ddl)
            conn.commit()


def _json_dumps(data: Any) -> str:
    """Serialize data to JSON string for storage."""
    if data is None:
        return "{}"
    return json.dumps(data, ensure_ascii=False, default=str)


def _json_loads(text: Any) -> Any:
    """Deserialize JSON string from storage."""
    if not text:
        return {}
    if isinstance(text, (dict, list)):
        return text  # Already parsed (Postgres JSONB)
    return json.loads(text)
