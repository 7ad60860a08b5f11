import logging
import queue
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, List, Optional, Union

from .config import DEFAULT_DB_TIMEOUT_SECONDS, DEFAULT_POOL_SIZE
from .errors import InvalidInputError, StorageFaultError

SCHEMA = """
CREATE TABLE IF NOT EXISTS file (
    id          TEXT PRIMARY KEY,
    abs_path    TEXT NOT NULL UNIQUE,
    name        TEXT NOT NULL,
    size_bytes  INTEGER NOT NULL,
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS share (
    slug            TEXT PRIMARY KEY,
    file_id         TEXT NOT NULL REFERENCES file(id) ON DELETE CASCADE,
    expires_at      TEXT,
    max_downloads   INTEGER,
    dl_count        INTEGER NOT NULL DEFAULT 0,
    password_hash   TEXT,
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_share_file_id ON share(file_id);
CREATE INDEX IF NOT EXISTS idx_share_created_at ON share(created_at);
"""

logger = logging.getLogger("fileserve.storage")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render *value* as fixed-width UTC text that sorts in time order."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="microseconds") + "Z"


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse a datetime or ISO-8601 string into an aware UTC datetime.

    Naive values are read as UTC. A trailing ``Z`` is accepted.
    """

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as error:
            raise InvalidInputError(f"Invalid timestamp: {value!r}") from error
    else:
        raise InvalidInputError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except (OverflowError, ValueError) as error:
        raise InvalidInputError(f"Invalid timestamp: {value!r}") from error


class ConnectionPool:
    """Fixed-size pool of SQLite connections shared by request handlers.

    Connections are opened lazily up to *size* and handed out one borrower at
    a time. They run in autocommit mode; writers open their own
    ``BEGIN IMMEDIATE`` transaction.
    """

    def __init__(
        self,
        db_path: Path,
        size: int = DEFAULT_POOL_SIZE,
        timeout: float = DEFAULT_DB_TIMEOUT_SECONDS,
    ) -> None:
        self.db_path = Path(db_path)
        self.size = max(1, int(size))
        self.timeout = float(timeout)
        self._idle: "queue.LifoQueue[sqlite3.Connection]" = queue.LifoQueue()
        self._connections: List[sqlite3.Connection] = []
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(f"PRAGMA busy_timeout={int(self.timeout * 1000)}")
            conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error:
            conn.close()
            raise
        conn.row_factory = sqlite3.Row
        return conn

    def acquire(self) -> sqlite3.Connection:
        if self._closed:
            raise StorageFaultError("Connection pool is closed")

        try:
            return self._idle.get_nowait()
        except queue.Empty:
            pass

        with self._lock:
            if len(self._connections) < self.size:
                try:
                    conn = self._connect()
                except sqlite3.Error as error:
                    logger.error(
                        "storage_connect_failed path=%s error=%s", self.db_path, error
                    )
                    raise StorageFaultError(f"Unable to open store: {error}") from error
                self._connections.append(conn)
                return conn

        try:
            return self._idle.get(timeout=self.timeout)
        except queue.Empty as error:
            logger.error("storage_pool_exhausted size=%d timeout=%.1f", self.size, self.timeout)
            raise StorageFaultError("Timed out waiting for a store connection") from error

    def release(self, conn: sqlite3.Connection) -> None:
        if self._closed:
            conn.close()
            return
        if conn.in_transaction:
            conn.rollback()
        self._idle.put(conn)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            connections = list(self._connections)
            self._connections.clear()

        for conn in connections:
            try:
                conn.close()
            except sqlite3.Error as error:
                logger.warning("storage_close_failed error=%s", error)


_pool: Optional[ConnectionPool] = None
_pool_lock = threading.Lock()


def init_storage(
    db_path: Path,
    pool_size: int = DEFAULT_POOL_SIZE,
    timeout: float = DEFAULT_DB_TIMEOUT_SECONDS,
) -> ConnectionPool:
    """Open the process-wide connection pool and create the schema."""

    global _pool

    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    with _pool_lock:
        if _pool is not None and not _pool.closed:
            logger.info("storage_reinitialized previous_path=%s", _pool.db_path)
            _pool.close()
        _pool = ConnectionPool(db_path, size=pool_size, timeout=timeout)

    init_db()
    logger.info("storage_initialized path=%s pool_size=%d", db_path, _pool.size)
    return _pool


def close_storage() -> None:
    """Close every pooled connection. Safe to call more than once."""

    global _pool

    with _pool_lock:
        pool, _pool = _pool, None

    if pool is not None and not pool.closed:
        pool.close()
        logger.info("storage_closed path=%s", pool.db_path)


def _require_pool() -> ConnectionPool:
    pool = _pool
    if pool is None or pool.closed:
        raise StorageFaultError("Storage has not been initialised")
    return pool


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    """Borrow a pooled connection for the duration of the block.

    Commits an open transaction on success and rolls back on error.
    Integrity violations propagate unchanged; every other SQLite error
    becomes a :class:`StorageFaultError`.
    """

    pool = _require_pool()
    conn = pool.acquire()
    try:
        yield conn
        if conn.in_transaction:
            conn.commit()
    except sqlite3.IntegrityError:
        if conn.in_transaction:
            conn.rollback()
        raise
    except sqlite3.Error as error:
        if conn.in_transaction:
            conn.rollback()
        logger.exception("storage_fault error=%s", error)
        raise StorageFaultError(str(error)) from error
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        pool.release(conn)


def init_db() -> None:
    with get_db() as conn:
        conn.executescript(SCHEMA)


def ping() -> bool:
    with get_db() as conn:
        row = conn.execute("SELECT 1 AS ok").fetchone()
    return bool(row and row["ok"] == 1)
