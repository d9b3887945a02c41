import jwt
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.core.clock import Clock, SystemClock, build_code_generator
from app.core.config import settings
from app.core.db import SessionLocal
from app.core.security import Principal, decode_bearer_token
from app.core.store import CredentialStore
from app.domains.booking.scheduler import BookingScheduler
from app.domains.notifications.dispatcher import NotificationSink
from app.domains.notifications.service import get_notifier
from app.domains.otp.engine import OtpEngine
from app.domains.system_config.policy import DbPolicySource


_code_generator = build_code_generator(settings)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_clock() -> Clock:
    return SystemClock()


def get_notification_sink() -> NotificationSink:
    return get_notifier()


def get_code_generator():
    return _code_generator


def get_otp_engine(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    notifier: NotificationSink = Depends(get_notification_sink),
    code_generator=Depends(get_code_generator),
) -> OtpEngine:
    return OtpEngine(
        CredentialStore(db),
        clock=clock,
        policy=DbPolicySource(db),
        notifier=notifier,
        code_generator=code_generator,
    )


def get_booking_scheduler(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    notifier: NotificationSink = Depends(get_notification_sink),
) -> BookingScheduler:
    return BookingScheduler(CredentialStore(db), clock=clock, policy=DbPolicySource(db), notifier=notifier)


def get_principal(request: Request) -> Principal:
    auth = request.headers.get("authorization") or ""
    prefix = "bearer "
    if not auth.lower().startswith(prefix):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    token = auth[len(prefix) :].strip()
    try:
        return decode_bearer_token(token)
    except (jwt.PyJWTError, KeyError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def _require_role(role: str, message: str):
    def _inner(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role != role:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=message)
        return principal

    return _inner


require_renter = _require_role("RENTER", "Only renters can perform this action")
require_merchant = _require_role("MERCHANT", "Only merchants can perform this action")
require_admin = _require_role("ADMIN", "Only admins can perform this action")
