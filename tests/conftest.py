"""
Shared fixtures: an in-memory SQLite store, a controllable clock and a
call-counting fake of the remote validator.
"""

import asyncio
from datetime import datetime, timedelta
from typing import List, Optional, Union

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from config import Settings
from database import utcnow
from license_service import LicenseService
from license_store import LicenseStateStore
from models import LicenseStatus, Verdict, VerdictSource


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = (start or utcnow()).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeValidator:
    """Returns queued verdicts or raises queued exceptions, counting calls."""

    def __init__(self, *outcomes: Union[Verdict, Exception], delay: float = 0.0):
        self.outcomes: List[Union[Verdict, Exception]] = list(outcomes)
        self.calls: List[tuple] = []
        self.delay = delay

    async def validate(self, license_key: str, domain: str) -> Verdict:
        self.calls.append((license_key, domain))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def active_verdict(valid_until: Optional[datetime], company: str = "Acme Lda") -> Verdict:
    return Verdict(
        status=LicenseStatus.ACTIVE,
        company=company,
        valid_until=valid_until,
        features={"reports": True},
        msg="License valid",
        source=VerdictSource.REMOTE,
    )


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(engine, clock) -> LicenseStateStore:
    return LicenseStateStore(engine, clock=clock)


@pytest.fixture
def validator(clock) -> FakeValidator:
    return FakeValidator(active_verdict(clock.now + timedelta(days=365)))


@pytest.fixture
def service(store, validator, clock) -> LicenseService:
    return LicenseService(store, validator, domain="inventory.example.com", clock=clock)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        APP_ENV="test",
        DATABASE_URL="sqlite://",
        LICENSE_VALIDATION_URL="https://authority.test/api/validate",
    )
