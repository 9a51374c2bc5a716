from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

import streamlit as st

from fishplant.config import Settings
from fishplant.errors import DataStoreError
from fishplant.schema import SCHEMA_SQL

logger = logging.getLogger(__name__)

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY_S = 0.05

_TRANSIENT_MARKERS = ("database is locked", "database is busy", "database table is locked")


class PlantConnection(sqlite3.Connection):
    """sqlite3 connection carrying the retry policy for transaction starts."""

    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    retry_base_delay_s: float = DEFAULT_RETRY_BASE_DELAY_S


def connect(
    db_path: Path | str,
    *,
    timeout: float = 5.0,
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
    retry_base_delay_s: float = DEFAULT_RETRY_BASE_DELAY_S,
) -> PlantConnection:
    try:
        # Autocommit mode: atomic units are opened explicitly with transaction().
        conn = sqlite3.connect(
            str(db_path),
            timeout=float(timeout),
            isolation_level=None,
            check_same_thread=False,
            factory=PlantConnection,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.Error as exc:
        logger.error("Could not open database %s: %s", db_path, exc)
        raise DataStoreError(f"Could not open database: {exc}") from exc
    conn.retry_attempts = max(1, int(retry_attempts))
    conn.retry_base_delay_s = max(0.0, float(retry_base_delay_s))
    return conn


def connect_with_settings(settings: Settings) -> PlantConnection:
    return connect(
        settings.db_path,
        timeout=settings.busy_timeout_s,
        retry_attempts=settings.retry_attempts,
        retry_base_delay_s=settings.retry_base_delay_s,
    )


def get_conn(settings: Settings) -> sqlite3.Connection:
    # One connection per browser session: a shared connection would share its transaction.
    key = f"fish_plant_conn::{settings.db_path}"
    conn = st.session_state.get(key)
    if conn is None:
        conn = connect_with_settings(settings)
        st.session_state[key] = conn
    return conn


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table});").fetchall()
    cols = [r["name"] for r in rows]
    return column in cols


def ensure_schema(conn: sqlite3.Connection) -> None:
    try:
        # Create base schema (for new installs)
        conn.executescript(SCHEMA_SQL)

        # ---- migrations for existing installs ----
        if not _column_exists(conn, "sorting_batches", "ready_for_dispatch_count"):
            conn.execute(
                "ALTER TABLE sorting_batches ADD COLUMN ready_for_dispatch_count INTEGER NOT NULL DEFAULT 0;"
            )
        if not _column_exists(conn, "dispatch_records", "total_value"):
            conn.execute("ALTER TABLE dispatch_records ADD COLUMN total_value REAL NOT NULL DEFAULT 0;")
    except sqlite3.Error as exc:
        logger.error("Schema bootstrap failed: %s", exc)
        raise DataStoreError(f"Schema bootstrap failed: {exc}") from exc


def _is_transient(exc: sqlite3.Error) -> bool:
    msg = str(exc).lower()
    return isinstance(exc, sqlite3.OperationalError) and any(m in msg for m in _TRANSIENT_MARKERS)


def _begin(conn: sqlite3.Connection, statement: str) -> None:
    """
    Start a transaction, retrying only while the lock cannot be acquired.
    Nothing has been written at this point, so a retry can never repeat a mutation.
    """
    attempts = max(1, int(getattr(conn, "retry_attempts", DEFAULT_RETRY_ATTEMPTS)))
    delay = float(getattr(conn, "retry_base_delay_s", DEFAULT_RETRY_BASE_DELAY_S))

    for attempt in range(1, attempts + 1):
        try:
            conn.execute(statement)
            return
        except sqlite3.Error as exc:
            if not _is_transient(exc) or attempt == attempts:
                logger.error("Could not start transaction after %s attempt(s): %s", attempt, exc)
                raise DataStoreError(f"Could not start transaction: {exc}") from exc
            logger.warning("Store busy (attempt %s/%s), retrying in %.3fs", attempt, attempts, delay)
            time.sleep(delay)
            delay *= 2


@contextmanager
def transaction(conn: sqlite3.Connection, *, immediate: bool = True) -> Iterator[sqlite3.Connection]:
    """
    One atomic unit against the store.

    immediate=True takes the writer lock up front (BEGIN IMMEDIATE), so the
    read -> validate -> write sequence inside the block is serialized against
    every other writer. immediate=False gives a consistent read snapshot.
    Joining an already-open transaction is allowed; the outer block owns commit.
    """
    if conn.in_transaction:
        yield conn
        return

    _begin(conn, "BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield conn
    except BaseException as exc:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as rb_exc:
            logger.error("Rollback failed: %s", rb_exc)
        if isinstance(exc, sqlite3.Error):
            logger.error("Transaction rolled back: %s", exc)
            raise DataStoreError(str(exc)) from exc
        raise
    else:
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            logger.error("Commit failed: %s", exc)
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise DataStoreError(f"Commit failed: {exc}") from exc


def q(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
    try:
        cur = conn.execute(sql, tuple(params))
        rows = cur.fetchall()
        cur.close()
    except sqlite3.Error as exc:
        logger.error("Query failed: %s", exc)
        raise DataStoreError(str(exc)) from exc
    return rows


def x(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> int:
    try:
        cur = conn.execute(sql, tuple(params))
        if not conn.in_transaction:
            conn.commit()
        last = cur.lastrowid
        cur.close()
    except sqlite3.Error as exc:
        logger.error("Statement failed: %s", exc)
        raise DataStoreError(str(exc)) from exc
    return int(last or 0)
