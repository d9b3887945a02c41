import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.clock import SystemClock
from app.core.config import settings
from app.core.db import Base, SessionLocal, engine
from app.core.deps import get_code_generator
from app.core.errors import DomainError, RateLimitedError
from app.core.store import CredentialStore
from app.domains.booking import models as booking_models  # noqa: F401
from app.domains.booking.router import router as booking_router
from app.domains.identity import models as identity_models  # noqa: F401
from app.domains.identity.router import router as identity_router
from app.domains.kyc import models as kyc_models  # noqa: F401
from app.domains.kyc.router import router as kyc_router
from app.domains.notifications.service import get_notifier, shutdown_notifier
from app.domains.otp import models as otp_models  # noqa: F401
from app.domains.otp.engine import OtpEngine
from app.domains.otp.worker import OtpSweepWorker
from app.domains.system_config import models as system_config_models  # noqa: F401
from app.domains.system_config.policy import DbPolicySource
from app.domains.system_config.router import router as system_config_router
from app.utils.sms import msg91_channels_available, msg91_missing_fields

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


app = FastAPI(title=settings.app_name)


@app.exception_handler(DomainError)
async def _domain_exception_handler(request: Request, exc: DomainError):
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    # Log the shape of 422s in dev only; never the body in prod.
    if settings.env == "dev":
        logger.info("422 path=%s errors=%s", request.url.path, exc.errors())
    return JSONResponse(status_code=422, content={"detail": exc.errors(), "code": "VALIDATION_ERROR"})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "An unexpected error occurred. Please try again later.", "code": "INTERNAL_ERROR"},
    )


origins = [o.strip() for o in settings.cors_allow_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins if origins else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _sweep_engine(store: CredentialStore) -> OtpEngine:
    return OtpEngine(
        store,
        clock=SystemClock(),
        policy=DbPolicySource(store.db),
        notifier=get_notifier(),
        code_generator=get_code_generator(),
    )


otp_sweep_worker = OtpSweepWorker(
    SessionLocal,
    engine_factory=_sweep_engine,
    interval_seconds=settings.otp_sweep_interval_seconds,
)


@app.on_event("startup")
async def _startup() -> None:
    # Auto-create tables; there are no migrations yet.
    Base.metadata.create_all(bind=engine)
    if settings.jwt_secret == settings.jwt_refresh_secret:
        logger.warning("JWT_REFRESH_SECRET equals JWT_SECRET; set distinct secrets outside dev")
    await otp_sweep_worker.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    await otp_sweep_worker.stop()
    shutdown_notifier()


@app.get("/health")
def health() -> dict:
    return {
        "ok": True,
        "service": settings.app_name,
        "env": settings.env,
        "otp_test_mode": get_code_generator().test_mode,
        "msg91_missing": msg91_missing_fields(),
        "msg91_channels": msg91_channels_available(),
    }


app.include_router(identity_router, tags=["identity"])
app.include_router(kyc_router, tags=["kyc"])
app.include_router(booking_router, tags=["bookings"])
app.include_router(system_config_router, tags=["system-config"])
