"""
Forward-only schema migrations for the license store.

Each migration is numbered and applied once. The SHA-256 of its statements
is written to the ``schema_migrations`` ledger so an edited migration is
detected instead of silently diverging from deployed databases.

Several processes may start at the same time against one database, so every
step tolerates having been done already by someone else: DDL that fails with
"already exists" counts as applied, and a ledger row inserted concurrently
counts as recorded.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError

from database import utcnow
from errors import MigrationError

logger = logging.getLogger(__name__)

# Placeholders rendered per dialect. Checksums are taken before rendering.
_DIALECT_TOKENS = {
    "postgresql": {"serial_pk": "SERIAL PRIMARY KEY"},
    "sqlite": {"serial_pk": "INTEGER PRIMARY KEY AUTOINCREMENT"},
}
_DEFAULT_TOKENS = {"serial_pk": "INTEGER PRIMARY KEY"}

_ALREADY_DONE_MARKERS = ("already exists", "duplicate column")

LEDGER_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER PRIMARY KEY,
    name VARCHAR(255) NOT NULL,
    checksum VARCHAR(64) NOT NULL,
    applied_at TIMESTAMP NOT NULL
)
"""


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    statements: Tuple[str, ...]

    @property
    def checksum(self) -> str:
        digest = hashlib.sha256()
        for statement in self.statements:
            digest.update(" ".join(statement.split()).encode("utf-8"))
            digest.update(b";")
        return digest.hexdigest()

    def render(self, dialect_name: str) -> List[str]:
        tokens = _DIALECT_TOKENS.get(dialect_name, _DEFAULT_TOKENS)
        return [statement.format(**tokens) for statement in self.statements]


MIGRATIONS: Tuple[Migration, ...] = (
    Migration(1, "create license_records", (
        """
        CREATE TABLE IF NOT EXISTS license_records (
            id {serial_pk},
            license_key VARCHAR(255) NOT NULL,
            company VARCHAR(255),
            valid_until TIMESTAMP,
            status VARCHAR(20) NOT NULL DEFAULT 'error',
            last_checked TIMESTAMP,
            validation_attempts INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )),
    Migration(2, "unique license_key", (
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_license_records_license_key "
        "ON license_records (license_key)",
    )),
    Migration(3, "add features column", (
        "ALTER TABLE license_records ADD COLUMN features TEXT",
    )),
)


def _already_done(exc: DBAPIError) -> bool:
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _ALREADY_DONE_MARKERS)


def _execute_tolerant(engine, statement: str) -> None:
    try:
        with engine.begin() as conn:
            conn.execute(text(statement))
    except DBAPIError as exc:
        if not _already_done(exc):
            raise
        logger.debug("Schema object already present, skipping: %s", exc.orig)


def applied_migrations(engine) -> Dict[int, str]:
    """Return ``{version: checksum}`` for every row in the ledger."""
    with engine.connect() as conn:
        rows = conn.execute(text("SELECT version, checksum FROM schema_migrations"))
        return {row.version: row.checksum for row in rows}


def _record(engine, migration: Migration) -> None:
    try:
        with engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO schema_migrations (version, name, checksum, applied_at) "
                    "VALUES (:version, :name, :checksum, :applied_at)"
                ),
                {
                    "version": migration.version,
                    "name": migration.name,
                    "checksum": migration.checksum,
                    "applied_at": utcnow(),
                },
            )
    except IntegrityError:
        # Another process recorded it between our read and our write.
        recorded = applied_migrations(engine).get(migration.version)
        if recorded != migration.checksum:
            raise MigrationError(
                f"Migration {migration.version} was recorded concurrently with a different checksum"
            )


def apply_migrations(engine, migrations: Sequence[Migration] = MIGRATIONS) -> List[int]:
    """
    Bring the schema up to date.

    Returns the versions applied by this call (empty when already current).
    Raises MigrationError when an applied migration no longer matches code.
    """
    _execute_tolerant(engine, LEDGER_DDL)
    applied = applied_migrations(engine)

    newly_applied = []
    for migration in sorted(migrations, key=lambda m: m.version):
        recorded = applied.get(migration.version)
        if recorded is not None:
            if recorded != migration.checksum:
                raise MigrationError(
                    f"Migration {migration.version} ({migration.name}) checksum mismatch: "
                    f"ledger has {recorded[:12]}, code has {migration.checksum[:12]}"
                )
            continue

        logger.info("Applying migration %s: %s", migration.version, migration.name)
        for statement in migration.render(engine.dialect.name):
            _execute_tolerant(engine, statement)
        _record(engine, migration)
        newly_applied.append(migration.version)

    return newly_applied
