"""
Data-store backends for the site_visits table.

Both stores expose the same small surface (ensure_schema / fetch_all /
execute / close) and a dialect describing the few SQL fragments that differ
between SQLite and PostgreSQL. Query text is built in tracker.queries.
"""
import logging
import sqlite3
from contextlib import closing
from datetime import timedelta

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

logger = logging.getLogger(__name__)

TABLE = "site_visits"

# columns every deployment must have, added on upgrade when missing
COLUMNS = [
    "site TEXT",
    "page TEXT",
    "referrer TEXT",
    "user_agent TEXT",
    "ip_address TEXT",
    "screen TEXT",
]


# -----------------------------------------------------------------------------
# Dialects
# -----------------------------------------------------------------------------
class SQLiteDialect:
    name = "sqlite"
    placeholder = "?"

    def since(self, days: int):
        """
        Lower bound of the trailing window, evaluated by the store at query time.
        Compared as Julian day numbers, which have no date-range limit, unlike
        datetime() which returns NULL outside years 0000-9999.
        """
        return "julianday(created_at) >= julianday('now') - ?", float(days)


class PostgresDialect:
    name = "postgresql"
    placeholder = "%s"

    def since(self, days: int):
        return "created_at >= NOW() - %s", timedelta(days=days)


# -----------------------------------------------------------------------------
# SQLite
# -----------------------------------------------------------------------------
class SQLiteStore:
    dialect = SQLiteDialect()

    def __init__(self, path: str, timeout: float = 30.0):
        self.path = path
        self.timeout = timeout

    def _connect(self):
        conn = sqlite3.connect(self.path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def open(self):
        logger.info("Using SQLite store at %s", self.path)

    def ensure_schema(self):
        """
        Create the table if missing and back-fill columns added since.
        Safe to run on every start.
        """
        with closing(self._connect()) as db:
            db.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {TABLE} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    site TEXT,
                    page TEXT,
                    referrer TEXT,
                    user_agent TEXT,
                    ip_address TEXT,
                    screen TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
            for coldef in COLUMNS:
                colname = coldef.split()[0]
                try:
                    db.execute(f"SELECT {colname} FROM {TABLE} LIMIT 1;")
                except sqlite3.OperationalError:
                    logger.info("Adding missing column %s.%s", TABLE, colname)
                    db.execute(f"ALTER TABLE {TABLE} ADD COLUMN {coldef};")
            db.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{TABLE}_created_at ON {TABLE} (created_at);"
            )
            db.commit()

    def fetch_all(self, sql, params=()):
        with closing(self._connect()) as db:
            return [dict(row) for row in db.execute(sql, params).fetchall()]

    def execute(self, sql, params=()):
        with closing(self._connect()) as db:
            db.execute(sql, params)
            db.commit()

    def close(self):
        # connections are per operation, nothing is held open
        pass


# -----------------------------------------------------------------------------
# PostgreSQL
# -----------------------------------------------------------------------------
class PostgresStore:
    """
    Process-wide bounded connection pool. Requests that find the pool
    exhausted wait up to `timeout` seconds and then fail with PoolTimeout.
    """

    dialect = PostgresDialect()

    def __init__(self, dsn: str, max_size: int = 10, timeout: float = 30.0):
        self.dsn = dsn
        self.max_size = max_size
        self.timeout = timeout
        self._pool: ConnectionPool | None = None

    def open(self):
        self._pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=self.max_size,
            timeout=self.timeout,
            kwargs={"row_factory": dict_row},
            open=False,
        )
        self._pool.open(wait=True, timeout=self.timeout)
        logger.info("Connection pool ready (max=%d)", self.max_size)

    @property
    def pool(self) -> ConnectionPool:
        if self._pool is None:
            raise RuntimeError("Store not opened. Call open() first.")
        return self._pool

    def ensure_schema(self):
        with self.pool.connection() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {TABLE} (
                    id BIGSERIAL PRIMARY KEY,
                    site TEXT,
                    page TEXT,
                    referrer TEXT,
                    user_agent TEXT,
                    ip_address TEXT,
                    screen TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )
            for coldef in COLUMNS:
                conn.execute(f"ALTER TABLE {TABLE} ADD COLUMN IF NOT EXISTS {coldef}")
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{TABLE}_created_at ON {TABLE} (created_at)"
            )

    def fetch_all(self, sql, params=()):
        with self.pool.connection() as conn:
            return conn.execute(sql, params).fetchall()

    def execute(self, sql, params=()):
        # the pool commits on a clean exit from the block
        with self.pool.connection() as conn:
            conn.execute(sql, params)

    def close(self):
        if self._pool is not None:
            self._pool.close()
            self._pool = None
            logger.info("Connection pool closed")


def open_store(settings):
    """
    Build the store selected by settings, open it and make sure the table exists.
    """
    if settings.is_postgres:
        store = PostgresStore(
            settings.database_url,
            max_size=settings.pool_size,
            timeout=settings.pool_timeout,
        )
    else:
        store = SQLiteStore(settings.sqlite_file, timeout=settings.pool_timeout)
    store.open()
    try:
        store.ensure_schema()
    except (sqlite3.Error, psycopg.Error):
        store.close()
        raise
    return store
