"""Tests for the raw-SQL database layer (SQLite backend)."""

import pytest

from src.executor.db import Database, _json_dumps, _json_loads


class TestDatabase:
    def test_defaults_to_sqlite(self, tmp_path) -> None:
        db = Database(sqlite_path=tmp_path / "x.db")
        assert not db.is_postgres
        assert "SQLite" in db.backend_name

    def test_postgres_url_selects_postgres(self) -> None:
        db = Database(url="postgresql://user@localhost/ebooks")
        assert db.is_postgres
        assert db.backend_name == "PostgreSQL"

    def test_init_creates_parent_directory_and_tables(self, tmp_path) -> None:
        db = Database(sqlite_path=tmp_path / "nested" / "dir" / "ebooks.db")
        db.init_db()
        tables = db.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name",
            fetch="all",
        )
        names = {row["name"] for row in tables}
        assert {"ebooks", "ebook_jobs"} <= names

    def test_init_is_idempotent(self, db: Database) -> None:
        db._initialized = False
        db.init_db()
        assert db.ping() is True

    def test_ping(self, db: Database) -> None:
        assert db.ping() is True

    def test_fetch_modes(self, db: Database) -> None:
        db.execute(
            """INSERT INTO ebooks (ebook_id, agency_id, title, status, created_at, updated_at)
               VALUES (%s, %s, %s, %s, %s, %s)""",
            ("e1", "a1", "Title", "CREATED", "t", "t"),
        )
        one = db.execute("SELECT * FROM ebooks WHERE ebook_id = %s", ("e1",), fetch="one")
        assert one["title"] == "Title"
        assert db.execute("SELECT * FROM ebooks", fetch="all")[0]["ebook_id"] == "e1"
        assert db.execute("SELECT * FROM ebooks WHERE ebook_id = %s", ("nope",), fetch="one") is None
        count = db.execute(
            "UPDATE ebooks SET title = %s WHERE agency_id = %s", ("New", "a1"), fetch="rowcount"
        )
        assert count == 1

    def test_unknown_fetch_mode(self, db: Database) -> None:
        with pytest.raises(ValueError, match="Unknown fetch mode"):
            db.execute("SELECT 1", fetch="many")

    def test_bad_sql_raises(self, db: Database) -> None:
        with pytest.raises(Exception):
            db.execute("SELECT * FROM missing_table", fetch="all")


class TestJsonHelpers:
    def test_dumps_none_is_empty_object(self) -> None:
        assert _json_dumps(None) == "{}"

    def test_round_trip_keeps_unicode(self) -> None:
        text = _json_dumps({"title": "Marketing Básico"})
        assert "Básico" in text
        assert _json_loads(text) == {"title": "Marketing Básico"}

    def test_loads_passes_through_parsed_values(self) -> None:
        assert _json_loads({"a": 1}) == {"a": 1}
        assert _json_loads(None) == {}
        assert _json_loads("") == {}
