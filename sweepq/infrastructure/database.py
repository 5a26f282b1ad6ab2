"""SQLite access for sweepq

All engine state lives in one SQLite file (sweepq/data/sweepq.db unless
SWEEPQ_DB_PATH says otherwise). Repositories reach it only through
get_db_connection() and db_transaction().

The database is also the engine's only coordination point between
workers. Ledger claims, summary claims and token increments are single
conditional statements (INSERT ... ON CONFLICT, UPDATE ... WHERE status = ?)
and their row counts decide who won. Nothing here takes an in-process lock
around a query.

Contents:
- retry_on_db_lock: backoff decorator for SQLITE_BUSY
- ConnectionPool: per-process pool of configured connections
- get_db_connection / db_transaction: borrowing helpers
- init_database / validate_schema: schema bootstrap
"""

from __future__ import annotations

import atexit
import os
import random
import sqlite3
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from functools import lru_cache, wraps
from pathlib import Path
from queue import Empty, Full, Queue
from threading import Lock
from typing import Any, TypeVar

from sweepq.config import (
    DB_CONNECT_TIMEOUT,
    DB_POOL_SIZE,
    DB_POOL_TIMEOUT,
    DB_RETRY_BASE_DELAY,
    DB_RETRY_JITTER,
    DB_RETRY_MAX,
    DB_RETRY_MAX_DELAY,
    DB_TEMP_CONN_MAX,
)
from sweepq.observability.logging import get_logger
from sweepq.observability.telemetry import counter, log_event

F = TypeVar("F", bound=Callable[..., Any])

DB_PATH = Path(__file__).parent.parent / "data" / "sweepq.db"

# Applied to every new connection, in order
_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    # ON DELETE CASCADE from user depends on this
    "PRAGMA foreign_keys=ON",
)

logger = get_logger(__name__)


def _is_busy_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


def _backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    delay = min(base_delay * (2**attempt), max_delay)
    return delay + random.uniform(0, delay * DB_RETRY_JITTER)


def retry_on_db_lock(
    max_retries: int = DB_RETRY_MAX,
    base_delay: float = DB_RETRY_BASE_DELAY,
    max_delay: float = DB_RETRY_MAX_DELAY,
) -> Callable[[F], F]:
    """
    Retry a database write when SQLite reports the file as locked or busy

    Worker threads writing claims and usage rows contend for SQLite's single
    writer lock. The call is repeated with exponential backoff plus jitter;
    any other OperationalError propagates immediately.

    Args:
        max_retries: Retries after the first attempt
        base_delay: First backoff in seconds, doubled per retry
        max_delay: Upper bound for a single backoff

    Usage:
        @retry_on_db_lock()
        def save_claim():
            with db_transaction() as conn:
                conn.execute("INSERT INTO processed_email ...")
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    if not _is_busy_error(e):
                        raise
                    if attempt >= max_retries:
                        logger.error(
                            "%s still locked after %d retries: %s", func.__name__, max_retries, e
                        )
                        counter("database.lock_retry_exhausted")
                        raise

                    pause = _backoff(attempt, base_delay, max_delay)
                    attempt += 1
                    logger.warning(
                        "%s hit a locked database (retry %d/%d in %.2fs)",
                        func.__name__,
                        attempt,
                        max_retries,
                        pause,
                    )
                    counter("database.lock_retry")
                    time.sleep(pause)

        return wrapper  # type: ignore[return-value]

    return decorator


class ConnectionPool:
    """
    Bounded pool of SQLite connections shared by worker threads

    When every pooled connection is borrowed and none comes back within
    DB_POOL_TIMEOUT, an overflow connection is opened (up to
    DB_TEMP_CONN_MAX at once) and closed again on release.
    """

    def __init__(self, db_path: Path, size: int = DB_POOL_SIZE) -> None:
        self.db_path = db_path
        self.size = size
        self.closed = False
        self.overflow_max = DB_TEMP_CONN_MAX
        self._idle: Queue[sqlite3.Connection] = Queue(maxsize=size)
        self._overflow: set[int] = set()
        self._lock = Lock()

        for _ in range(size):
            try:
                self._idle.put(self._connect())
            except (sqlite3.Error, RuntimeError) as e:
                logger.warning("Could not open pooled connection to %s: %s", db_path, e)

        atexit.register(self.close_all)

    def _connect(self) -> sqlite3.Connection:
        """
        Open and configure one connection

        Raises:
            RuntimeError: If the integrity check reports corruption
        """
        conn = sqlite3.connect(str(self.db_path), timeout=DB_CONNECT_TIMEOUT, check_same_thread=False)
        try:
            verdict = conn.execute("PRAGMA quick_check(1)").fetchone()[0]
        except sqlite3.DatabaseError as e:
            conn.close()
            counter("database.corruption_detected")
            logger.critical("Integrity check failed on %s: %s", self.db_path, e)
            raise RuntimeError(f"Database corruption detected: {e}") from e

        if verdict != "ok":
            conn.close()
            counter("database.corruption_detected")
            logger.critical("Integrity check failed on %s: %s", self.db_path, verdict)
            raise RuntimeError(f"Database corruption detected: {verdict}")

        for pragma in _PRAGMAS:
            conn.execute(pragma)
        conn.row_factory = sqlite3.Row
        return conn

    @property
    def overflow_in_use(self) -> int:
        return len(self._overflow)

    def acquire(self) -> sqlite3.Connection:
        """
        Borrow a connection, opening an overflow connection if the pool stays empty

        Raises:
            RuntimeError: If the pool is closed or the overflow limit is reached
        """
        if self.closed:
            raise RuntimeError("Connection pool has been closed")

        try:
            return self._idle.get(timeout=DB_POOL_TIMEOUT)
        except Empty:
            pass

        with self._lock:
            if len(self._overflow) >= self.overflow_max:
                logger.critical(
                    "No database connection available: pool of %d busy, %d overflow open",
                    self.size,
                    len(self._overflow),
                )
                raise RuntimeError(
                    f"Database connection pool exhausted (size={self.size}, "
                    f"overflow={len(self._overflow)}/{self.overflow_max})"
                )
            conn = self._connect()
            self._overflow.add(id(conn))
            in_overflow = len(self._overflow)

        logger.error("Connection pool exhausted; opened overflow connection %d", in_overflow)
        log_event("database.pool_exhausted", pool_size=self.size, overflow=in_overflow)
        return conn

    def release(self, conn: sqlite3.Connection) -> None:
        with self._lock:
            is_overflow = id(conn) in self._overflow
            self._overflow.discard(id(conn))

        if is_overflow or self.closed:
            conn.close()
            return

        try:
            self._idle.put_nowait(conn)
        except Full:
            logger.warning("Pool already full on release; closing connection")
            conn.close()

    def close_all(self) -> None:
        self.closed = True
        while True:
            try:
                self._idle.get_nowait().close()
            except Empty:
                return

    def stats(self) -> dict[str, Any]:
        available = self._idle.qsize()
        in_use = self.size - available
        return {
            "pool_size": self.size,
            "available": available,
            "in_use": in_use,
            "overflow": self.overflow_in_use,
            "usage_percent": round(in_use / self.size * 100, 1) if self.size else 0,
            "closed": self.closed,
        }


@lru_cache(maxsize=1)
def get_pool() -> ConnectionPool:
    """Process-wide pool for the current database path."""
    return ConnectionPool(get_db_path())


def reset_pool() -> None:
    """
    Close the current pool and forget it; the next get_pool() re-reads SWEEPQ_DB_PATH

    Side Effects:
        - Closes all idle pooled connections
    """
    if get_pool.cache_info().currsize:
        get_pool().close_all()
    get_pool.cache_clear()


def get_db_path() -> Path:
    env_path = os.getenv("SWEEPQ_DB_PATH")
    return Path(env_path) if env_path else DB_PATH


@contextmanager
def get_db_connection() -> Generator[sqlite3.Connection, None, None]:
    """
    Borrow a pooled connection for the duration of the block

    Raises:
        FileNotFoundError: If the database file does not exist yet
    """
    db_path = get_db_path()
    if not db_path.exists():
        raise FileNotFoundError(
            f"Database not found: {db_path} (call sweepq.infrastructure.database.init_database())"
        )

    pool = get_pool()
    conn = pool.acquire()
    try:
        yield conn
    finally:
        pool.release(conn)


@contextmanager
def db_transaction(immediate: bool = False) -> Generator[sqlite3.Connection, None, None]:
    """
    Run the block in one transaction: commit on success, roll back on any error

    Args:
        immediate: Start with BEGIN IMMEDIATE so the write lock is held from
            the first statement (read-then-write sections)
    """
    with get_db_connection() as conn:
        if immediate:
            conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        conn.commit()


def validate_schema() -> bool:
    """
    Raises:
        ValueError: If a required table or column is missing
    """
    from sweepq.infrastructure.database_schema import validate_schema as check_schema

    with get_db_connection() as conn:
        return check_schema(conn)


def get_pool_stats() -> dict[str, Any]:
    return get_pool().stats()


def init_database() -> None:
    """Create the data directory, tables and indexes if missing (idempotent)."""
    from sweepq.infrastructure.database_schema import init_database as create_schema

    create_schema(get_db_path())
