"""
Exception hierarchy for license validation and storage.
"""


class LicenseError(Exception):
    """Base class for license subsystem errors."""


class ValidationError(LicenseError):
    """A remote validation attempt did not produce a verdict."""

    kind = "validation"


class NetworkError(ValidationError):
    """The authority could not be reached (timeout, DNS, refused, TLS, 5xx)."""

    kind = "network"


class ApplicationError(ValidationError):
    """The authority was reached and explicitly rejected the key."""

    kind = "rejected"


class MalformedResponse(ValidationError):
    """The authority answered but the body is not a verdict."""

    kind = "malformed"


class StorageError(LicenseError):
    """The license store could not be read or written."""


class MigrationError(StorageError):
    """The schema ledger disagrees with the migrations shipped in code."""
