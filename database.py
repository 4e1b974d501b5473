import json
from datetime import datetime, timezone

from sqlalchemy import create_engine, Column, Integer, String, DateTime, Text
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every column in this schema stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JSONText(TypeDecorator):
    """
    JSON document stored in a TEXT column.

    Keeps the DDL identical across PostgreSQL and SQLite so the migration
    checksums do not depend on the dialect.
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return json.dumps(value, sort_keys=True)

    def process_result_value(self, value, dialect):
        if value is None or value == "":
            return None
        return json.loads(value)


# Database Models
class LicenseRecord(Base):
    __tablename__ = "license_records"

    id = Column(Integer, primary_key=True)
    license_key = Column(String(255), unique=True, nullable=False)

    # Issued-to data from the authority
    company = Column(String(255))
    valid_until = Column(DateTime)  # None = no expiry enforced
    features = Column(JSONText)

    # Last validation outcome: active, expired, error
    status = Column(String(20), nullable=False, default="error")
    last_checked = Column(DateTime)
    validation_attempts = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<LicenseRecord {self.license_key[:4]}... status={self.status}>"


def make_engine(url: str, **kwargs):
    return create_engine(url, pool_pre_ping=True, **kwargs)


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
