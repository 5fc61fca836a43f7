"""Tests for database setup."""

import pytest
from sqlalchemy import inspect, select, text

from imageforge.db import get_engine, get_session, open_database
from imageforge.ledger.models import BuildSessionRecord


class TestGetEngine:
    """Tests for get_engine."""

    def test_creates_parent_directory(self, tmp_path):
        """File-backed SQLite databases get their directory created."""
        db_path = tmp_path / "state" / "nested" / "db.sqlite"
        engine = get_engine(f"sqlite:///{db_path}")
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        engine.dispose()

        assert db_path.exists()

    def test_durable_pragmas(self, tmp_path):
        """Connections use WAL with full synchronous writes."""
        engine = get_engine(f"sqlite:///{tmp_path}/db.sqlite")
        with engine.connect() as conn:
            assert conn.execute(text("PRAGMA journal_mode")).scalar() == "wal"
            # FULL = 2
            assert conn.execute(text("PRAGMA synchronous")).scalar() == 2
            assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
        engine.dispose()

    def test_in_memory(self):
        """In-memory URLs work without touching the filesystem."""
        engine = get_engine("sqlite:///:memory:")
        with engine.connect() as conn:
            assert conn.execute(text("SELECT 1")).scalar() == 1
        engine.dispose()


class TestOpenDatabase:
    """Tests for open_database and get_session."""

    def test_tables_created(self, tmp_path):
        """The session and ledger tables exist after opening."""
        factory = open_database(f"sqlite:///{tmp_path}/db.sqlite")
        tables = inspect(factory.kw["bind"]).get_table_names()

        assert "build_sessions" in tables
        assert "ledger_entries" in tables

    def test_get_session_commits(self, tmp_path):
        """Work in a get_session block is committed on exit."""
        factory = open_database(f"sqlite:///{tmp_path}/db.sqlite")
        with get_session(factory) as db:
            db.add(BuildSessionRecord(session_id="a" * 32, fingerprint="fp", work_dir="/w"))

        with get_session(factory) as db:
            assert db.execute(select(BuildSessionRecord)).scalar_one().session_id == "a" * 32

    def test_get_session_rolls_back(self, tmp_path):
        """Exceptions roll back the unit of work and propagate."""
        factory = open_database(f"sqlite:///{tmp_path}/db.sqlite")
        with pytest.raises(RuntimeError):
            with get_session(factory) as db:
                db.add(
                    BuildSessionRecord(session_id="b" * 32, fingerprint="fp", work_dir="/w")
                )
                db.flush()
                raise RuntimeError("boom")

        with get_session(factory) as db:
            assert db.execute(select(BuildSessionRecord)).first() is None
