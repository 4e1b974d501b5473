import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from database import LicenseRecord, utcnow
from errors import ApplicationError, StorageError, ValidationError
from license_store import LicenseStateStore
from models import LicenseStatus, Verdict, VerdictSource
from remote_validator import RemoteValidator

logger = logging.getLogger(__name__)

DEGRADED_MSG = "Using cached license data (network unavailable)"
STORE_DEGRADED_MSG = "Using last known license verdict (license store unavailable)"
CACHE_MSG = "License data from cache"
TEST_MODE_MSG = "Test mode: license validation skipped"


def mask_key(license_key: Optional[str]) -> Optional[str]:
    if not license_key:
        return license_key
    return license_key[:4] + "..."


def is_valid(verdict: Optional[Verdict], now: Optional[datetime] = None) -> bool:
    """True iff the verdict is active and not past its expiry."""
    if verdict is None or verdict.status is not LicenseStatus.ACTIVE:
        return False
    if verdict.valid_until is None:
        return True
    return verdict.valid_until > (now or utcnow())


def days_until_expiry(verdict: Optional[Verdict], now: Optional[datetime] = None) -> Optional[int]:
    if verdict is None or verdict.valid_until is None:
        return None
    remaining = verdict.valid_until - (now or utcnow())
    return math.floor(remaining / timedelta(days=1))


def _record_verdict(record: LicenseRecord, source: VerdictSource, msg: Optional[str]) -> Verdict:
    return Verdict(
        status=record.status,
        company=record.company,
        valid_until=record.valid_until,
        features=record.features,
        msg=msg,
        source=source,
    )


def _error_verdict(msg: str) -> Verdict:
    return Verdict(status=LicenseStatus.ERROR, msg=msg)


class LicenseService:
    """
    Decides whether this instance is licensed right now.

    Stored verdicts younger than the TTL are served without a network call.
    Older ones are revalidated; if the authority cannot be reached, a record
    that was active and fresh when the check began is served in degraded mode.
    """

    def __init__(self, store: LicenseStateStore, validator: RemoteValidator, domain: str,
                 ttl: timedelta = timedelta(hours=24), test_mode: bool = False,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.validator = validator
        self.domain = domain
        self.ttl = ttl
        self.test_mode = test_mode
        self.clock = clock

        # Last verdict read from the store or the authority; served while the
        # store is unreachable, for at most one TTL.
        self.last_verdict: Optional[Verdict] = None
        self.last_verdict_at: Optional[datetime] = None
        self._inflight: Dict[str, asyncio.Future] = {}

        if test_mode:
            logger.warning("License test mode enabled: remote validation is skipped")

    @classmethod
    def from_settings(cls, settings, store: LicenseStateStore, validator: Optional[RemoteValidator] = None):
        validator = validator or RemoteValidator(
            settings.LICENSE_VALIDATION_URL, timeout=settings.LICENSE_API_TIMEOUT
        )
        return cls(
            store,
            validator,
            domain=settings.APP_DOMAIN,
            ttl=timedelta(hours=settings.VALIDATION_TTL_HOURS),
            test_mode=settings.LICENSE_TEST_MODE,
        )

    def is_fresh(self, record: LicenseRecord, now: datetime) -> bool:
        return record.last_checked is not None and (now - record.last_checked) <= self.ttl

    async def check_license(self, force: bool = False) -> Verdict:
        """
        Resolve the current license to a verdict. Never raises.

        ``force`` revalidates even when the stored verdict is still fresh.
        """
        try:
            verdict = await self._check(force)
        except Exception as e:
            logger.exception("Unexpected error while checking license")
            verdict = _error_verdict(f"Error checking license: {e.__class__.__name__}")
        self._remember(verdict)
        return verdict

    def _remember(self, verdict: Verdict) -> None:
        if verdict.source is VerdictSource.DEGRADED:
            return
        self.last_verdict = verdict
        self.last_verdict_at = self.clock()

    def _last_known(self, now: datetime) -> Optional[Verdict]:
        if self.last_verdict is None or self.last_verdict.status is not LicenseStatus.ACTIVE:
            return None
        if self.last_verdict_at is None or now - self.last_verdict_at > self.ttl:
            return None
        return self.last_verdict.model_copy(
            update={"source": VerdictSource.DEGRADED, "msg": STORE_DEGRADED_MSG}
        )

    async def _check(self, force: bool) -> Verdict:
        try:
            record = self.store.get_current()
        except StorageError as e:
            logger.error("Could not read current license: %s", e)
            last_known = self._last_known(self.clock())
            if last_known is not None:
                logger.info("Serving last known license verdict in degraded mode")
                return last_known
            return _error_verdict("License store unavailable")

        if record is None:
            return Verdict(status=LicenseStatus.MISSING, msg="No license key configured")

        if self.test_mode:
            return self._test_mode_verdict(record)

        now = self.clock()
        if force or not self.is_fresh(record, now):
            logger.info("License %s needs revalidation", mask_key(record.license_key))
            return await self._revalidate_once(record, now)

        return _record_verdict(record, VerdictSource.CACHE, CACHE_MSG)

    def _test_mode_verdict(self, record: LicenseRecord) -> Verdict:
        try:
            self.store.touch_last_checked(record.license_key)
        except StorageError as e:
            logger.error("Could not touch license in test mode: %s", e)
        return Verdict(
            status=LicenseStatus.ACTIVE,
            company=record.company,
            valid_until=self.clock() + timedelta(days=365),
            features=record.features,
            msg=TEST_MODE_MSG,
            source=VerdictSource.TEST_MODE,
        )

    async def _revalidate_once(self, record: LicenseRecord, now: datetime) -> Verdict:
        # Callers racing on the same key share one remote call.
        pending = self._inflight.get(record.license_key)
        if pending is not None:
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(self._revalidate(record, now))
        self._inflight[record.license_key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done():
                self._inflight.pop(record.license_key, None)
            else:
                task.add_done_callback(lambda _: self._inflight.pop(record.license_key, None))

    async def _revalidate(self, record: LicenseRecord, now: datetime) -> Verdict:
        key = record.license_key
        # Freshness is judged on the record as read, before this attempt.
        was_fresh = self.is_fresh(record, now)

        try:
            verdict = await self.validator.validate(key, self.domain)
        except ValidationError as e:
            logger.warning("License %s validation failed (%s): %s", mask_key(key), e.kind, e)
            # Any failure class falls back to an active record that was fresh.
            if record.status == LicenseStatus.ACTIVE.value and was_fresh:
                self._bump_attempts(key)
                logger.info("Serving cached license %s in degraded mode", mask_key(key))
                return _record_verdict(record, VerdictSource.DEGRADED, DEGRADED_MSG)
            if isinstance(e, ApplicationError):
                self._persist_rejection(key)
                return _error_verdict(str(e))
            self._bump_attempts(key)
            return _error_verdict(f"Unable to validate license: {e}")

        try:
            self.store.upsert(
                key,
                status=verdict.status,
                company=verdict.company,
                valid_until=verdict.valid_until,
                features=verdict.features,
                last_checked=self.clock(),
                validation_attempts=0,
            )
        except StorageError as e:
            logger.error("Could not persist license verdict: %s", e)

        logger.info("License validation successful: %s", verdict.status.value)
        return verdict

    def _bump_attempts(self, license_key: str) -> None:
        try:
            self.store.record_failed_attempt(license_key)
        except StorageError as e:
            logger.error("Could not record failed validation attempt: %s", e)

    def _persist_rejection(self, license_key: str) -> None:
        try:
            record = self.store.get_by_key(license_key)
            attempts = (record.validation_attempts if record else 0) + 1
            self.store.upsert(
                license_key,
                status=LicenseStatus.ERROR,
                last_checked=self.clock(),
                validation_attempts=attempts,
            )
        except StorageError as e:
            logger.error("Could not persist license rejection: %s", e)

    async def set_license(self, license_key: str) -> Verdict:
        """
        Submit or replace the license key and validate it immediately.

        Failures follow the same fallback as check_license(): resubmitting a
        key whose record is active and fresh serves that record in degraded
        mode. Otherwise a rejection is persisted as status=error, and an
        unreachable authority stores the key with status=error and no
        last_checked so the next check retries. Storage failures propagate.
        """
        license_key = license_key.strip()
        if not license_key:
            raise ValueError("License key is required")

        logger.info("Validating submitted license key %s", mask_key(license_key))

        if self.test_mode:
            self.store.upsert(license_key, status=LicenseStatus.ACTIVE, last_checked=self.clock())
            verdict = self._test_mode_verdict(self.store.get_by_key(license_key))
            self._remember(verdict)
            return verdict

        existing = self.store.get_by_key(license_key)
        was_fresh = existing is not None and self.is_fresh(existing, self.clock())

        try:
            verdict = await self.validator.validate(license_key, self.domain)
        except ValidationError as e:
            logger.warning("Submitted license %s could not be validated (%s): %s",
                           mask_key(license_key), e.kind, e)
            attempts = (existing.validation_attempts if existing else 0) + 1
            if existing is not None and existing.status == LicenseStatus.ACTIVE.value and was_fresh:
                self._bump_attempts(license_key)
                logger.info("Serving cached license %s in degraded mode", mask_key(license_key))
                return _record_verdict(existing, VerdictSource.DEGRADED, DEGRADED_MSG)
            if isinstance(e, ApplicationError):
                self.store.upsert(
                    license_key,
                    status=LicenseStatus.ERROR,
                    last_checked=self.clock(),
                    validation_attempts=attempts,
                )
                verdict = _error_verdict(str(e))
            else:
                # No last_checked, so the next check retries.
                self.store.upsert(
                    license_key,
                    status=LicenseStatus.ERROR,
                    last_checked=None,
                    validation_attempts=attempts,
                )
                verdict = _error_verdict(f"Unable to validate license: {e}")
        else:
            self.store.upsert(
                license_key,
                status=verdict.status,
                company=verdict.company,
                valid_until=verdict.valid_until,
                features=verdict.features,
                last_checked=self.clock(),
                validation_attempts=0,
            )

        self._remember(verdict)
        return verdict

    def remove_license(self) -> int:
        removed = self.store.remove_all()
        self.last_verdict = None
        logger.info("License removed (%s record(s))", removed)
        return removed

    async def get_status(self, verdict: Optional[Verdict] = None) -> Dict[str, Any]:
        """
        Current license status for display. Runs check_license() unless a
        verdict that was just obtained is passed in.
        """
        if verdict is None:
            verdict = await self.check_license()
        try:
            record = self.store.get_current()
        except StorageError as e:
            logger.error("Could not load license metadata: %s", e)
            record = None

        now = self.clock()
        return {
            "hasLicense": record is not None,
            "status": verdict.status,
            "valid": is_valid(verdict, now),
            "licenseKey": mask_key(record.license_key) if record else None,
            "company": verdict.company,
            "validUntil": verdict.valid_until.isoformat() if verdict.valid_until else None,
            "daysUntilExpiry": days_until_expiry(verdict, now),
            "lastChecked": record.last_checked.isoformat() if record and record.last_checked else None,
            "validationAttempts": record.validation_attempts if record else 0,
            "features": verdict.features,
            "source": verdict.source.value,
            "message": verdict.msg,
        }
