"""Tests for the schema migration ledger."""

import pytest
from sqlalchemy import inspect, text
from sqlalchemy.exc import OperationalError

from errors import MigrationError
from migrations import MIGRATIONS, Migration, applied_migrations, apply_migrations


def _columns(engine):
    return {column["name"] for column in inspect(engine).get_columns("license_records")}


class TestApplyMigrations:
    def test_fresh_database_gets_every_migration(self, engine):
        applied = apply_migrations(engine)

        assert applied == [m.version for m in MIGRATIONS]
        assert _columns(engine) == {
            "id", "license_key", "company", "valid_until", "status", "last_checked",
            "validation_attempts", "created_at", "updated_at", "features",
        }

    def test_second_run_is_a_no_op(self, engine):
        apply_migrations(engine)
        columns = _columns(engine)

        assert apply_migrations(engine) == []
        assert apply_migrations(engine) == []
        assert _columns(engine) == columns

    def test_ledger_records_checksums(self, engine):
        apply_migrations(engine)

        ledger = applied_migrations(engine)
        assert ledger == {m.version: m.checksum for m in MIGRATIONS}

    def test_unique_index_on_license_key(self, engine):
        apply_migrations(engine)

        indexes = inspect(engine).get_indexes("license_records")
        unique = [ix for ix in indexes if ix["unique"]]
        assert any(ix["column_names"] == ["license_key"] for ix in unique)

    def test_column_added_by_another_process_counts_as_applied(self, engine):
        apply_migrations(engine, MIGRATIONS[:2])
        with engine.begin() as conn:
            conn.execute(text("ALTER TABLE license_records ADD COLUMN features TEXT"))

        assert apply_migrations(engine) == [3]
        assert "features" in _columns(engine)

    def test_edited_migration_is_rejected(self, engine):
        apply_migrations(engine)
        edited = list(MIGRATIONS)
        edited[2] = Migration(3, "add features column", ("ALTER TABLE license_records ADD COLUMN features JSON",))

        with pytest.raises(MigrationError, match="checksum mismatch"):
            apply_migrations(engine, edited)

    def test_real_failures_propagate(self, engine):
        broken = (Migration(1, "broken", ("CREATE TABLE (",)),)

        with pytest.raises(OperationalError):
            apply_migrations(engine, broken)
        assert applied_migrations(engine) == {}


class TestMigration:
    def test_checksum_ignores_whitespace_runs(self):
        assert Migration(1, "a", ("SELECT  1",)).checksum == Migration(1, "a", ("SELECT 1",)).checksum

    def test_render_per_dialect(self):
        migration = MIGRATIONS[0]
        assert "SERIAL PRIMARY KEY" in migration.render("postgresql")[0]
        assert "INTEGER PRIMARY KEY AUTOINCREMENT" in migration.render("sqlite")[0]
