"""Transactions, retry on a locked store, and error mapping."""

import sqlite3

import pytest

from fishplant import db as plant_db
from fishplant.db import connect, ensure_schema, q, transaction, x
from fishplant.errors import DataStoreError


def _count(conn):
    return q(conn, "SELECT COUNT(*) AS n FROM outlets")[0]["n"]


class TestTransaction:

    def test_commits_on_success(self, conn, db_path):
        with transaction(conn):
            x(conn, "INSERT INTO outlets(name) VALUES ('A')")

        other = connect(db_path)
        assert _count(other) == 1
        other.close()

    def test_rolls_back_on_error(self, conn):
        with pytest.raises(RuntimeError):
            with transaction(conn):
                x(conn, "INSERT INTO outlets(name) VALUES ('A')")
                raise RuntimeError("boom")

        assert _count(conn) == 0
        assert not conn.in_transaction

    def test_inner_block_joins_outer(self, conn):
        with pytest.raises(RuntimeError):
            with transaction(conn):
                with transaction(conn):
                    x(conn, "INSERT INTO outlets(name) VALUES ('A')")
                assert conn.in_transaction
                raise RuntimeError("outer fails after inner finished")

        assert _count(conn) == 0

    def test_constraint_violation_becomes_data_store_error(self, conn):
        x(conn, "INSERT INTO outlets(name) VALUES ('A')")

        with pytest.raises(DataStoreError):
            with transaction(conn):
                x(conn, "INSERT INTO outlets(name) VALUES ('B')")
                x(conn, "INSERT INTO outlets(name) VALUES ('A')")

        assert _count(conn) == 1

    def test_bad_query_becomes_data_store_error(self, conn):
        with pytest.raises(DataStoreError):
            q(conn, "SELECT * FROM no_such_table")


class TestRetry:

    def test_retries_while_locked_then_succeeds(self, conn, db_path, monkeypatch):
        blocker = connect(db_path)
        blocker.execute("BEGIN IMMEDIATE")
        waits = []

        def release(delay):
            waits.append(delay)
            if blocker.in_transaction:
                blocker.execute("ROLLBACK")

        monkeypatch.setattr(plant_db.time, "sleep", release)
        c = connect(db_path, timeout=0, retry_attempts=3, retry_base_delay_s=0.01)

        with transaction(c):
            x(c, "INSERT INTO outlets(name) VALUES ('A')")

        assert waits == [0.01]
        assert _count(c) == 1
        c.close()
        blocker.close()

    def test_gives_up_after_bounded_attempts(self, conn, db_path, monkeypatch):
        blocker = connect(db_path)
        blocker.execute("BEGIN IMMEDIATE")
        waits = []
        monkeypatch.setattr(plant_db.time, "sleep", waits.append)
        c = connect(db_path, timeout=0, retry_attempts=3, retry_base_delay_s=0.01)

        with pytest.raises(DataStoreError):
            with transaction(c):
                x(c, "INSERT INTO outlets(name) VALUES ('A')")

        assert waits == [0.01, 0.02]
        blocker.execute("ROLLBACK")
        assert _count(c) == 0
        c.close()
        blocker.close()

    def test_only_lock_errors_are_transient(self):
        assert plant_db._is_transient(sqlite3.OperationalError("database is locked"))
        assert not plant_db._is_transient(sqlite3.OperationalError("no such table: x"))
        assert not plant_db._is_transient(sqlite3.IntegrityError("UNIQUE constraint failed"))


class TestSchema:

    def test_ensure_schema_is_idempotent(self, conn):
        ensure_schema(conn)
        ensure_schema(conn)

        cols = [r["name"] for r in conn.execute("PRAGMA table_info(sorting_batches)")]
        assert "ready_for_dispatch_count" in cols

    def test_unopenable_database(self, tmp_path):
        with pytest.raises(DataStoreError):
            connect(tmp_path / "missing" / "plant.db")
