import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends, HTTPException, Request

from config import Settings, settings as default_settings
from database import make_engine
from errors import StorageError
from gate import LicenseGateMiddleware, require_roles
from license_service import LicenseService
from license_store import LicenseStateStore
from models import (
    HealthCheckResponse,
    LicenseRemovedResponse,
    LicenseStatusResponse,
    LicenseSubmitRequest,
    Verdict,
)
from notifications import Notifier, build_notifier
from scheduler import PeriodicChecker, build_license_checker
from system_info import get_system_info

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )


def get_license_service(request: Request) -> LicenseService:
    return request.app.state.license_service


def create_app(settings: Optional[Settings] = None, service: Optional[LicenseService] = None,
               notifier: Optional[Notifier] = None, checker: Optional[PeriodicChecker] = None) -> FastAPI:
    settings = settings or default_settings
    configure_logging(settings.LOG_LEVEL)

    if service is None:
        store = LicenseStateStore(make_engine(settings.DATABASE_URL))
        service = LicenseService.from_settings(settings, store)
    if checker is None:
        checker = build_license_checker(service, notifier or build_notifier(settings), settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            service.store.ensure_schema()
        except StorageError as e:
            logger.error("License schema not ensured at startup, will retry on first use: %s", e)
        checker.start()
        try:
            yield
        finally:
            checker.shutdown()

    app = FastAPI(
        title="License Gate Service",
        description="License validation, caching and request gating for the inventory application",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.license_service = service
    app.state.license_checker = checker

    app.add_middleware(
        LicenseGateMiddleware,
        service=service,
        allow_paths=settings.GATE_ALLOW_PATHS,
        privileged_roles=settings.PRIVILEGED_ROLES,
        admin_path=settings.LICENSE_ADMIN_PATH,
    )

    admin_only = Depends(require_roles(*settings.ADMIN_ROLES, *settings.PRIVILEGED_ROLES))

    # Administrative endpoints
    @app.get("/admin/license", response_model=LicenseStatusResponse)
    async def license_status(service: LicenseService = Depends(get_license_service)):
        """
        Current license status and metadata for display.
        """
        return await service.get_status()

    @app.post("/admin/license", response_model=LicenseStatusResponse, dependencies=[admin_only])
    async def submit_license(
        request: LicenseSubmitRequest,
        service: LicenseService = Depends(get_license_service),
    ):
        """
        Submit or replace the license key.

        The key is validated with the authority immediately and stored
        whatever the outcome, so an operator can see why it was rejected.
        """
        if not request.licenseKey.strip():
            raise HTTPException(status_code=400, detail="License key is required")
        try:
            verdict = await service.set_license(request.licenseKey)
            return await service.get_status(verdict)
        except StorageError as e:
            logger.error("Could not store submitted license: %s", e)
            raise HTTPException(status_code=503, detail="License store unavailable")

    @app.delete("/admin/license", response_model=LicenseRemovedResponse, dependencies=[admin_only])
    async def remove_license(service: LicenseService = Depends(get_license_service)):
        try:
            removed = service.remove_license()
        except StorageError as e:
            logger.error("Could not remove license: %s", e)
            raise HTTPException(status_code=503, detail="License store unavailable")
        return {"success": True, "message": f"Removed {removed} license record(s)"}

    @app.post("/admin/license/recheck", response_model=LicenseStatusResponse, dependencies=[admin_only])
    async def recheck_license(service: LicenseService = Depends(get_license_service)):
        """
        Revalidate with the authority now, regardless of cache age.
        """
        verdict = await service.check_license(force=True)
        return await service.get_status(verdict)

    @app.get("/health", response_model=HealthCheckResponse)
    async def health_check():
        return {
            "status": "healthy",
            "service": "license-gate",
            "version": settings.APP_VERSION,
            "domain": settings.APP_DOMAIN,
            "system": get_system_info(),
        }

    # Behind the gate
    @app.get("/api/license", response_model=Optional[Verdict])
    async def current_license(request: Request):
        """
        The verdict the gate attached to this request; None for callers
        that bypassed the gate.
        """
        return getattr(request.state, "license", None)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
