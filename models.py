from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

class LicenseStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    ERROR = "error"
    MISSING = "missing"  # synthesized, never persisted

class VerdictSource(str, Enum):
    REMOTE = "remote"
    CACHE = "cache"
    DEGRADED = "degraded"
    TEST_MODE = "test_mode"
    NONE = "none"

class Verdict(BaseModel):
    status: LicenseStatus
    company: Optional[str] = None
    valid_until: Optional[datetime] = None
    features: Dict[str, Any] = Field(default_factory=dict)
    msg: Optional[str] = None
    source: VerdictSource = VerdictSource.NONE

    @field_validator("valid_until", mode="before")
    @classmethod
    def _naive_utc(cls, value):
        """Accept dates, ISO strings and aware datetimes; store naive UTC."""
        if value is None or value == "":
            return None
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        elif isinstance(value, date) and not isinstance(value, datetime):
            value = datetime(value.year, value.month, value.day)
        if isinstance(value, datetime) and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    @field_validator("features", mode="before")
    @classmethod
    def _empty_features(cls, value):
        return value or {}

# API payloads
class LicenseSubmitRequest(BaseModel):
    licenseKey: str

class LicenseStatusResponse(BaseModel):
    hasLicense: bool
    status: LicenseStatus
    valid: bool
    licenseKey: Optional[str] = None
    company: Optional[str] = None
    validUntil: Optional[str] = None
    daysUntilExpiry: Optional[int] = None
    lastChecked: Optional[str] = None
    validationAttempts: int = 0
    features: Dict[str, Any] = Field(default_factory=dict)
    source: Optional[str] = None
    message: Optional[str] = None

class LicenseRemovedResponse(BaseModel):
    success: bool
    message: str

class LicenseRejection(BaseModel):
    error: str
    licenseStatus: LicenseStatus
    redirect: str

class HealthCheckResponse(BaseModel):
    status: str
    service: str
    version: str
    domain: str
    system: Dict[str, Any] = Field(default_factory=dict)
