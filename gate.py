import logging
from typing import Callable, Iterable, Optional, Sequence
from urllib.parse import urlencode

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from license_service import LicenseService, is_valid
from models import LicenseRejection, LicenseStatus, Verdict

logger = logging.getLogger(__name__)

REJECTION_ERROR = "License invalid or expired"
REJECTION_NOTICE = "License invalid or expired. Please contact your administrator."


def state_roles(request: Request) -> Iterable[str]:
    """Roles placed on request.state by the authentication layer."""
    return getattr(request.state, "roles", None) or ()


def require_roles(*allowed: str):
    """FastAPI dependency: 403 unless the caller holds one of ``allowed``."""
    allowed_roles = frozenset(allowed)

    def dependency(request: Request) -> None:
        if not any(role in allowed_roles for role in state_roles(request)):
            raise HTTPException(status_code=403, detail="Administrator role required")

    return dependency


def path_allowed(path: str, allow_paths: Sequence[str]) -> bool:
    for allowed in allow_paths:
        prefix = allowed.rstrip("/")
        if path == allowed or path == prefix or path.startswith(prefix + "/"):
            return True
    return False


def wants_json(request: Request) -> bool:
    if request.headers.get("x-requested-with", "").lower() == "xmlhttprequest":
        return True
    return "json" in request.headers.get("accept", "").lower()


class LicenseGateMiddleware(BaseHTTPMiddleware):
    """
    Rejects requests while the instance is not licensed.

    Privileged callers and allow-listed paths pass without a check. Valid
    verdicts are attached to ``request.state.license``.
    """

    def __init__(self, app, service: LicenseService,
                 allow_paths: Sequence[str] = ("/auth", "/admin/license", "/health"),
                 privileged_roles: Sequence[str] = ("developer",),
                 admin_path: str = "/admin/license",
                 role_resolver: Optional[Callable[[Request], Iterable[str]]] = None):
        super().__init__(app)
        self.service = service
        self.allow_paths = tuple(allow_paths)
        self.privileged_roles = frozenset(privileged_roles)
        self.admin_path = admin_path
        self.role_resolver = role_resolver or state_roles

    def bypasses(self, request: Request) -> bool:
        if path_allowed(request.url.path, self.allow_paths):
            return True
        return any(role in self.privileged_roles for role in self.role_resolver(request))

    async def evaluate(self, request: Request) -> Verdict:
        try:
            return await self.service.check_license()
        except Exception:
            logger.exception("License gate failed to evaluate request to %s", request.url.path)
            return Verdict(status=LicenseStatus.ERROR, msg="License check failed")

    async def dispatch(self, request: Request, call_next):
        if self.bypasses(request):
            return await call_next(request)

        verdict = await self.evaluate(request)
        if is_valid(verdict, self.service.clock()):
            request.state.license = verdict
            return await call_next(request)

        logger.info("Rejected %s %s: license %s", request.method, request.url.path, verdict.status.value)
        return self.reject(request, verdict)

    def reject(self, request: Request, verdict: Verdict):
        if wants_json(request):
            body = LicenseRejection(
                error=REJECTION_ERROR,
                licenseStatus=verdict.status,
                redirect=self.admin_path,
            )
            return JSONResponse(status_code=403, content=body.model_dump(mode="json"))
        return RedirectResponse(
            f"{self.admin_path}?{urlencode({'notice': REJECTION_NOTICE})}",
            status_code=303,
        )
