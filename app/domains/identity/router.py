from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.clock import Clock
from app.core.deps import get_clock, get_db, get_otp_engine, get_principal
from app.core.security import Principal
from app.core.store import CredentialStore
from app.domains.identity.schemas import (
    OTPSendIn,
    OTPSendOut,
    OTPVerifyIn,
    ProfileIn,
    RefreshTokenIn,
    SessionOut,
    TokenPairOut,
    UserOut,
)
from app.domains.identity.service import (
    complete_profile,
    get_user,
    logout,
    refresh_session,
    request_otp,
    verify_and_authenticate,
)
from app.domains.otp.engine import OtpEngine


router = APIRouter(prefix="/auth")


@router.post("/otp/send", response_model=OTPSendOut)
def otp_send(payload: OTPSendIn, engine: OtpEngine = Depends(get_otp_engine)) -> OTPSendOut:
    out = request_otp(engine.store, engine, phone=payload.phone, role=payload.role)
    return OTPSendOut(**out)


@router.post("/otp/verify", response_model=SessionOut)
def otp_verify(
    payload: OTPVerifyIn,
    engine: OtpEngine = Depends(get_otp_engine),
    clock: Clock = Depends(get_clock),
) -> SessionOut:
    s = verify_and_authenticate(
        engine.store,
        engine,
        phone=payload.phone,
        otp=payload.otp,
        role=payload.role,
        now=clock.now(),
    )
    return SessionOut(
        user=UserOut.model_validate(s["user"]),
        access_token=s["access_token"],
        refresh_token=s["refresh_token"],
    )


@router.post("/refresh", response_model=TokenPairOut)
def refresh(payload: RefreshTokenIn, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)) -> TokenPairOut:
    tokens = refresh_session(CredentialStore(db), refresh_token=payload.refresh_token, now=clock.now())
    return TokenPairOut(**tokens)


@router.post("/logout", response_model=dict)
def logout_route(payload: RefreshTokenIn, db: Session = Depends(get_db)) -> dict:
    logout(CredentialStore(db), refresh_token=payload.refresh_token)
    return {"message": "Logged out successfully"}


@router.get("/me", response_model=UserOut)
def me(principal: Principal = Depends(get_principal), db: Session = Depends(get_db)) -> UserOut:
    return UserOut.model_validate(get_user(db, principal.sub))


@router.post("/profile", response_model=UserOut)
def profile(
    payload: ProfileIn,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> UserOut:
    user = complete_profile(
        db,
        user_id=principal.sub,
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        business_name=payload.business_name,
        now=clock.now(),
    )
    return UserOut.model_validate(user)
