import logging
from typing import Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from errors import ApplicationError, MalformedResponse, NetworkError
from models import LicenseStatus, Verdict, VerdictSource

logger = logging.getLogger(__name__)

VERDICT_STATUSES = (LicenseStatus.ACTIVE.value, LicenseStatus.EXPIRED.value)


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get("msg") or body.get("message") or body.get("error")
    return None


class RemoteValidator:
    """
    Client for the external license authority.

    One POST per call, no retries. Failures are raised as NetworkError,
    ApplicationError or MalformedResponse.
    """

    def __init__(self, url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def validate(self, license_key: str, domain: str) -> Verdict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.url,
                    json={"license_key": license_key, "domain": domain},
                    headers={"Content-Type": "application/json"},
                )
        except httpx.TimeoutException as e:
            raise NetworkError(f"License authority timed out after {self.timeout}s") from e
        except httpx.DecodingError as e:
            raise MalformedResponse(f"Undecodable response from license authority: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"License authority unreachable: {e.__class__.__name__}: {e}") from e

        if response.status_code >= 500:
            raise NetworkError(f"License authority unavailable (HTTP {response.status_code})")
        if response.status_code >= 400:
            raise ApplicationError(
                _error_message(response) or f"License rejected (HTTP {response.status_code})"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponse("License authority returned a non-JSON body") from e

        if not isinstance(data, dict) or not data.get("status"):
            raise MalformedResponse("License authority response has no status")

        status = str(data["status"]).lower()
        if status not in VERDICT_STATUSES:
            raise ApplicationError(data.get("msg") or f"License rejected (status {status})")

        try:
            return Verdict(
                status=status,
                company=data.get("company"),
                valid_until=data.get("valid_until"),
                features=data.get("features"),
                msg=data.get("msg"),
                source=VerdictSource.REMOTE,
            )
        except (PydanticValidationError, ValueError, TypeError) as e:
            raise MalformedResponse(f"License authority response has an invalid shape: {e}") from e
