"""
Daily background checks.

A PeriodicChecker runs a check once a day at a fixed time and once shortly
after startup, and emits each of the check's findings at most once per day.
The license expiry warning is one such check; any other expiry scanner can
reuse the same checker.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from errors import StorageError
from license_service import LicenseService, days_until_expiry, mask_key
from models import LicenseStatus
from notifications import Notifier

logger = logging.getLogger(__name__)

TRIGGER_STARTUP = "startup"
TRIGGER_DAILY = "daily"
TRIGGER_MANUAL = "manual"


@dataclass(frozen=True)
class Finding:
    dedup_key: str
    subject: str
    message: str
    payload: Dict[str, Any] = field(default_factory=dict)


CheckFn = Callable[[str], Awaitable[Optional[Iterable[Finding]]]]
EmitFn = Callable[[Finding], Awaitable[None]]


class PeriodicChecker:
    def __init__(self, name: str, check: CheckFn, emit: EmitFn, hour: int = 9, minute: int = 0,
                 timezone: Optional[str] = None, startup_delay_seconds: int = 30,
                 scheduler: Optional[AsyncIOScheduler] = None,
                 today: Callable[[], date] = date.today):
        self.name = name
        self.check = check
        self.emit = emit
        self.hour = hour
        self.minute = minute
        self.startup_delay = timedelta(seconds=startup_delay_seconds)
        self.timezone = timezone
        # Created on start() so it binds to the running event loop.
        self.scheduler = scheduler
        self.today = today
        self._emitted: Dict[str, date] = {}

    async def run_once(self, trigger: str = TRIGGER_MANUAL) -> Optional[List[Finding]]:
        """
        Run the check and emit new findings. Returns the findings emitted,
        or None if the check itself failed.
        """
        logger.info("Running %s check (%s)", self.name, trigger)
        try:
            findings = list(await self.check(trigger) or [])
        except Exception:
            logger.exception("%s check failed", self.name)
            return None

        today = self.today()
        emitted = []
        for finding in findings:
            if self._emitted.get(finding.dedup_key) == today:
                logger.debug("Already emitted %s today", finding.dedup_key)
                continue
            try:
                await self.emit(finding)
            except Exception:
                logger.exception("Failed to emit %s", finding.dedup_key)
                continue
            self._emitted[finding.dedup_key] = today
            emitted.append(finding)

        logger.info("%s check completed: %d finding(s), %d emitted", self.name, len(findings), len(emitted))
        return emitted

    def start(self):
        if self.scheduler is None:
            self.scheduler = AsyncIOScheduler(timezone=self.timezone) if self.timezone else AsyncIOScheduler()
        self.scheduler.add_job(
            self.run_once,
            "cron",
            hour=self.hour,
            minute=self.minute,
            args=[TRIGGER_DAILY],
            id=f"{self.name}_daily",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.run_once,
            "date",
            run_date=datetime.now(self.scheduler.timezone) + self.startup_delay,
            args=[TRIGGER_STARTUP],
            id=f"{self.name}_startup",
            replace_existing=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info("%s checker started - daily at %02d:%02d", self.name, self.hour, self.minute)

    def shutdown(self):
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("%s checker stopped", self.name)


def license_expiry_check(service: LicenseService, warning_days: int = 30) -> CheckFn:
    """
    The daily tick forces a revalidation; the startup run only revalidates
    a stale or never-checked license.
    """

    async def check(trigger: str) -> List[Finding]:
        verdict = await service.check_license(force=trigger == TRIGGER_DAILY)
        if verdict.status is not LicenseStatus.ACTIVE:
            logger.warning("License issue: %s (%s)", verdict.status.value, verdict.msg)
            return []

        days = days_until_expiry(verdict, service.clock())
        if days is None or not 0 < days <= warning_days:
            return []

        try:
            record = service.store.get_current()
        except StorageError as e:
            logger.error("Could not load license for expiry warning: %s", e)
            record = None
        key = record.license_key if record else "current"

        return [Finding(
            dedup_key=f"license-expiry:{key}",
            subject="License expiring soon",
            message=f"The license for {verdict.company or 'this installation'} expires in {days} day(s).",
            payload={
                "licenseKey": mask_key(key),
                "company": verdict.company,
                "validUntil": verdict.valid_until.isoformat(),
                "daysUntilExpiry": days,
            },
        )]

    return check


def notifier_emit(notifier: Notifier) -> EmitFn:
    async def emit(finding: Finding) -> None:
        await notifier.notify(finding.subject, finding.message, finding.payload)

    return emit


def build_license_checker(service: LicenseService, notifier: Notifier, settings) -> PeriodicChecker:
    return PeriodicChecker(
        "license",
        license_expiry_check(service, settings.EXPIRY_WARNING_DAYS),
        notifier_emit(notifier),
        hour=settings.DAILY_CHECK_HOUR,
        minute=settings.DAILY_CHECK_MINUTE,
        timezone=settings.SCHEDULER_TIMEZONE,
        startup_delay_seconds=settings.STARTUP_CHECK_DELAY_SECONDS,
    )
