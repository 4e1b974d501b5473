"""
Persistent storage for license records.

Every SQLAlchemy failure surfaces as StorageError; deciding whether a failure
is fatal belongs to the caller.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional

from sqlalchemy import select, update, delete
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from database import LicenseRecord, make_session_factory, utcnow
from errors import StorageError
from migrations import apply_migrations
from models import LicenseStatus

logger = logging.getLogger(__name__)

UPSERT_FIELDS = frozenset({
    "company",
    "valid_until",
    "status",
    "features",
    "last_checked",
    "validation_attempts",
})

_NATIVE_UPSERT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class LicenseStateStore:
    def __init__(self, engine, session_factory=None, clock: Callable[[], datetime] = utcnow):
        self.engine = engine
        self.session_factory = session_factory or make_session_factory(engine)
        self.clock = clock
        self._schema_ensured = False

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"License store unavailable: {e}") from e
        finally:
            session.close()

    def ensure_schema(self) -> None:
        """
        Create or upgrade the license table. Safe to call from any number of
        processes at once; after one success the check is skipped.
        """
        if self._schema_ensured:
            return
        try:
            applied = apply_migrations(self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not ensure license schema: {e}") from e
        if applied:
            logger.info("License schema migrated: %s", applied)
        self._schema_ensured = True

    def get_current(self) -> Optional[LicenseRecord]:
        """Most recently created record, or None."""
        self.ensure_schema()
        with self._session() as session:
            return session.scalars(
                select(LicenseRecord)
                .order_by(LicenseRecord.created_at.desc(), LicenseRecord.id.desc())
                .limit(1)
            ).first()

    def get_by_key(self, license_key: str) -> Optional[LicenseRecord]:
        self.ensure_schema()
        with self._session() as session:
            return self._by_key(session, license_key)

    def _by_key(self, session: Session, license_key: str) -> Optional[LicenseRecord]:
        return session.scalars(
            select(LicenseRecord).where(LicenseRecord.license_key == license_key)
        ).first()

    def upsert(self, license_key: str, **fields) -> LicenseRecord:
        """
        Insert or update the record for ``license_key``.

        Only the given fields are written. ``updated_at`` is always touched;
        ``last_checked`` changes only when the caller passes it.
        """
        unknown = set(fields) - UPSERT_FIELDS
        if unknown:
            raise ValueError(f"Unknown license fields: {sorted(unknown)}")

        status = fields.get("status")
        if status is not None:
            status = LicenseStatus(status)
            if status is LicenseStatus.MISSING:
                raise ValueError("'missing' is not a storable status")
            fields["status"] = status.value

        self.ensure_schema()
        now = self.clock()
        insert_fn = _NATIVE_UPSERT.get(self.engine.dialect.name)

        with self._session() as session:
            if insert_fn is not None:
                self._native_upsert(session, insert_fn, license_key, fields, now)
            else:
                self._portable_upsert(session, license_key, fields, now)
            session.flush()
            record = self._by_key(session, license_key)
            session.refresh(record)
            return record

    def _native_upsert(self, session, insert_fn, license_key, fields, now):
        values = dict(fields, license_key=license_key, created_at=now, updated_at=now)
        stmt = insert_fn(LicenseRecord).values(**values)
        changes = {name: stmt.excluded[name] for name in fields}
        changes["updated_at"] = stmt.excluded.updated_at
        stmt = stmt.on_conflict_do_update(
            index_elements=[LicenseRecord.license_key],
            set_=changes,
        )
        session.execute(stmt)

    def _portable_upsert(self, session, license_key, fields, now):
        for attempt in range(2):
            record = self._by_key(session, license_key)
            if record is None:
                record = LicenseRecord(license_key=license_key, created_at=now)
                session.add(record)
            for name, value in fields.items():
                setattr(record, name, value)
            record.updated_at = now
            try:
                session.flush()
                return
            except IntegrityError:
                # Lost an insert race; the row exists now, update it instead.
                session.rollback()
                if attempt:
                    raise

    def touch_last_checked(self, license_key: str) -> bool:
        """Mark the record as just checked without changing its status."""
        self.ensure_schema()
        now = self.clock()
        with self._session() as session:
            result = session.execute(
                update(LicenseRecord)
                .where(LicenseRecord.license_key == license_key)
                .values(last_checked=now, updated_at=now)
            )
            return result.rowcount > 0

    def record_failed_attempt(self, license_key: str) -> bool:
        self.ensure_schema()
        with self._session() as session:
            result = session.execute(
                update(LicenseRecord)
                .where(LicenseRecord.license_key == license_key)
                .values(
                    validation_attempts=LicenseRecord.validation_attempts + 1,
                    updated_at=self.clock(),
                )
            )
            return result.rowcount > 0

    def remove_all(self) -> int:
        """Delete every license record. Returns the number removed."""
        self.ensure_schema()
        with self._session() as session:
            result = session.execute(delete(LicenseRecord))
            return result.rowcount
