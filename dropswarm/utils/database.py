"""
SQLite event store.

Agents and the orchestrator write human-readable status lines and trade records here so an
operator can review a run afterwards. Writes go through a single persistent connection with
batched commits; reads open short-lived read-only connections and return pandas DataFrames.

The database lives in the project root by default; `DROPSWARM_DB_PATH` overrides it.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time
from functools import wraps
from pathlib import Path
from typing import Callable, ParamSpec, TypeVar

import pandas as pd

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def _default_db_path() -> str:
    override = (os.environ.get("DROPSWARM_DB_PATH") or "").strip()
    if override:
        return override
    return str(Path(__file__).resolve().parents[2] / "dropswarm.db")


DB_PATH = _default_db_path()

# ----- PERSISTENT WRITE CONNECTION WITH BATCHING -----
_write_conn_lock = threading.Lock()
_write_conn: sqlite3.Connection | None = None
_pending_writes = 0
_last_commit_time = 0.0
_BATCH_COMMIT_INTERVAL = 2.0  # Commit at most every 2 seconds
_BATCH_COMMIT_THRESHOLD = 50  # Or after 50 pending writes


def set_db_path(path: str | Path) -> None:
    """Point the store at a different file (closes the current write connection)."""
    global DB_PATH
    close_write_conn()
    DB_PATH = str(path)


def _get_write_conn() -> sqlite3.Connection:
    global _write_conn
    if _write_conn is None:
        with _write_conn_lock:
            if _write_conn is None:
                _write_conn = sqlite3.connect(DB_PATH, timeout=30, check_same_thread=False, isolation_level="DEFERRED")
                _write_conn.execute("PRAGMA journal_mode=WAL")
                _write_conn.execute("PRAGMA synchronous=NORMAL")
                _write_conn.execute("PRAGMA busy_timeout=10000")
                logger.info("Opened persistent write connection to %s (batched commits)", DB_PATH)
    return _write_conn


def _maybe_commit() -> None:
    """Commit if we've accumulated enough writes or enough time has passed."""
    global _pending_writes, _last_commit_time
    now = time.time()
    should_commit = (
        _pending_writes >= _BATCH_COMMIT_THRESHOLD or
        (now - _last_commit_time) >= _BATCH_COMMIT_INTERVAL
    )
    if should_commit and _write_conn is not None:
        try:
            _write_conn.commit()
            _pending_writes = 0
            _last_commit_time = now
        except sqlite3.Error as e:
            logger.warning(f"Batch commit failed: {e}")


def _increment_pending() -> None:
    global _pending_writes
    _pending_writes += 1
    _maybe_commit()


def force_commit() -> None:
    """Force an immediate commit (call before reads that must see recent writes, and on shutdown)."""
    global _pending_writes, _last_commit_time
    if _write_conn is not None:
        try:
            _write_conn.commit()
            _pending_writes = 0
            _last_commit_time = time.time()
        except sqlite3.Error as e:
            logger.warning(f"Force commit failed: {e}")


def close_write_conn() -> None:
    global _write_conn
    if _write_conn is not None:
        with _write_conn_lock:
            if _write_conn is not None:
                _write_conn.commit()
                _write_conn.close()
                _write_conn = None
                logger.info("Closed persistent write connection")


def safe_db_read(default_factory: Callable[[], T]) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Return `default_factory()` instead of raising when the database is locked or missing."""
    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except sqlite3.OperationalError as e:
                logger.warning(f"Database read failed ({func.__name__}): {e}")
                return default_factory()
            except sqlite3.DatabaseError as e:
                logger.error(f"Database error ({func.__name__}): {e}")
                return default_factory()
        return wrapper
    return decorator


def _connect_ro() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH, timeout=2, isolation_level=None)
    conn.execute("PRAGMA query_only = 1")
    return conn


def init_db() -> None:
    """Create the schema (idempotent)."""
    conn = sqlite3.connect(DB_PATH, timeout=30)
    try:
        cursor = conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS event_stream (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                level TEXT,
                symbol TEXT,
                step TEXT,
                message TEXT
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS trades (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                agent_id INTEGER,
                mint TEXT,
                action TEXT,
                amount REAL,
                signature TEXT,
                status TEXT
            )
            """
        )
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_event_stream_symbol ON event_stream(symbol)")
        conn.commit()
    finally:
        conn.close()


def log_event(level: str, message: str, symbol: str | None = None, step: str | None = None) -> None:
    conn = _get_write_conn()
    conn.execute(
        "INSERT INTO event_stream (level, symbol, step, message) VALUES (?, ?, ?, ?)",
        (level, symbol, step, message),
    )
    _increment_pending()


def record_trade(agent_id: int, mint: str, action: str, amount: float, signature: str | None, status: str) -> None:
    conn = _get_write_conn()
    conn.execute(
        "INSERT INTO trades (agent_id, mint, action, amount, signature, status) VALUES (?, ?, ?, ?, ?, ?)",
        (int(agent_id), mint, action, float(amount), signature, status),
    )
    _increment_pending()


@safe_db_read(default_factory=pd.DataFrame)
def get_events(limit: int = 200) -> pd.DataFrame:
    conn = _connect_ro()
    try:
        return pd.read_sql_query(
            "SELECT * FROM event_stream ORDER BY id DESC LIMIT ?",
            conn,
            params=(int(limit),),
        )
    finally:
        conn.close()


@safe_db_read(default_factory=pd.DataFrame)
def get_trades(agent_id: int | None = None) -> pd.DataFrame:
    conn = _connect_ro()
    try:
        if agent_id is None:
            return pd.read_sql_query("SELECT * FROM trades ORDER BY id ASC", conn)
        return pd.read_sql_query(
            "SELECT * FROM trades WHERE agent_id = ? ORDER BY id ASC",
            conn,
            params=(int(agent_id),),
        )
    finally:
        conn.close()
