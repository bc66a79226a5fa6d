# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for the async SQL layer: adapter factory, tables, transactions."""

from __future__ import annotations

import pytest
import pytest_asyncio

from campaign_mailer.sql import Integer, SqlDb, SqliteAdapter, String, Table, get_adapter


class NotesTable(Table):
    name = "notes"

    def configure(self) -> None:
        c = self.columns
        c.column("id", Integer, primary_key=True)
        c.column("owner", String, nullable=False)
        c.column("body", String)
        c.column("labels", String, json_encoded=True)
        c.column("hits", Integer, nullable=False, default=0)
        c.unique("owner", "body")


@pytest_asyncio.fixture
async def notes_db(tmp_path):
    db = SqlDb(str(tmp_path / "notes.db"))
    db.add_table(NotesTable)
    await db.connect()
    await db.check_structure()
    yield db
    await db.close()


class TestGetAdapter:
    def test_absolute_path_is_sqlite(self, tmp_path):
        adapter = get_adapter(str(tmp_path / "x.db"))
        assert isinstance(adapter, SqliteAdapter)

    def test_explicit_sqlite_prefix(self):
        adapter = get_adapter("sqlite::memory:")
        assert isinstance(adapter, SqliteAdapter)
        assert adapter.db_path == ":memory:"

    def test_relative_path_rejected(self):
        with pytest.raises(ValueError):
            get_adapter("campaigns.db")

    def test_unknown_scheme_rejected(self):
        with pytest.raises(ValueError, match="Unknown database type"):
            get_adapter("mysql://localhost/db")


class TestTable:
    @pytest.mark.asyncio
    async def test_create_table_sql_contains_constraints(self, notes_db):
        sql = notes_db.table("notes").create_table_sql()
        assert "CREATE TABLE IF NOT EXISTS notes" in sql
        assert "UNIQUE (owner, body)" in sql.replace('"', "")

    @pytest.mark.asyncio
    async def test_json_columns_round_trip(self, notes_db):
        notes = notes_db.table("notes")
        note_id = await notes.insert_returning_id({"owner": "ann", "body": "hi", "labels": ["a", "b"]})
        row = await notes.select_one(where={"id": note_id})
        assert row["labels"] == ["a", "b"]
        assert row["hits"] == 0

    @pytest.mark.asyncio
    async def test_count_exists_delete(self, notes_db):
        notes = notes_db.table("notes")
        await notes.insert({"owner": "ann", "body": "one"})
        await notes.insert({"owner": "ann", "body": "two"})
        assert await notes.count({"owner": "ann"}) == 2
        assert await notes.exists({"body": "two"})
        assert await notes.delete({"body": "two"}) == 1
        assert not await notes.exists({"body": "two"})

    @pytest.mark.asyncio
    async def test_upsert_updates_existing_row(self, notes_db):
        notes = notes_db.table("notes")
        await notes.upsert({"owner": "ann", "body": "x", "hits": 1}, conflict_columns=["owner", "body"])
        await notes.upsert({"owner": "ann", "body": "x", "hits": 5}, conflict_columns=["owner", "body"])
        rows = await notes.select(where={"owner": "ann"})
        assert len(rows) == 1
        assert rows[0]["hits"] == 5

    @pytest.mark.asyncio
    async def test_unknown_table_raises(self, notes_db):
        with pytest.raises(KeyError):
            notes_db.table("missing")


class TestTransaction:
    @pytest.mark.asyncio
    async def test_commit_applies_all_statements(self, notes_db):
        notes = notes_db.table("notes")
        note_id = await notes.insert_returning_id({"owner": "ann", "body": "tx"})
        async with notes_db.transaction() as tx:
            await tx.execute("UPDATE notes SET hits = hits + 1 WHERE id = :id", {"id": note_id})
            await tx.execute("UPDATE notes SET hits = hits + 1 WHERE id = :id", {"id": note_id})
            row = await tx.fetch_one("SELECT hits FROM notes WHERE id = :id", {"id": note_id})
            assert row["hits"] == 2
        assert (await notes.select_one(where={"id": note_id}))["hits"] == 2

    @pytest.mark.asyncio
    async def test_exception_rolls_back(self, notes_db):
        notes = notes_db.table("notes")
        note_id = await notes.insert_returning_id({"owner": "ann", "body": "rb"})
        with pytest.raises(RuntimeError):
            async with notes_db.transaction() as tx:
                await tx.execute("UPDATE notes SET hits = 10 WHERE id = :id", {"id": note_id})
                raise RuntimeError("boom")
        assert (await notes.select_one(where={"id": note_id}))["hits"] == 0
