from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.clock import Clock
from app.core.deps import get_clock, get_db, get_notification_sink, require_admin, require_renter
from app.core.security import Principal
from app.domains.kyc.schemas import KycOut, KycRejectIn, KycSubmitIn
from app.domains.kyc.service import approve_kyc, get_kyc_for_user, list_pending, reject_kyc, submit_kyc
from app.domains.notifications.dispatcher import NotificationSink


router = APIRouter(prefix="/kyc")


@router.post("", response_model=KycOut, status_code=201)
def kyc_submit(
    payload: KycSubmitIn,
    principal: Principal = Depends(require_renter),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> KycOut:
    kyc = submit_kyc(
        db,
        user_id=principal.sub,
        license_number=payload.license_number,
        license_image_url=payload.license_image_url,
        license_expiry_date=payload.license_expiry_date,
        now=clock.now(),
    )
    return KycOut.model_validate(kyc)


@router.get("/status", response_model=KycOut)
def kyc_status(principal: Principal = Depends(require_renter), db: Session = Depends(get_db)) -> KycOut:
    return KycOut.model_validate(get_kyc_for_user(db, principal.sub))


@router.get("/pending", response_model=list[KycOut])
def kyc_pending(_principal: Principal = Depends(require_admin), db: Session = Depends(get_db)) -> list[KycOut]:
    return [KycOut.model_validate(k) for k in list_pending(db)]


@router.post("/{kyc_id}/approve", response_model=KycOut)
def kyc_approve(
    kyc_id: str,
    _principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: NotificationSink = Depends(get_notification_sink),
    clock: Clock = Depends(get_clock),
) -> KycOut:
    return KycOut.model_validate(approve_kyc(db, notifier, kyc_id=kyc_id, now=clock.now()))


@router.post("/{kyc_id}/reject", response_model=KycOut)
def kyc_reject(
    kyc_id: str,
    payload: KycRejectIn,
    _principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> KycOut:
    return KycOut.model_validate(reject_kyc(db, kyc_id=kyc_id, reason=payload.reason, now=clock.now()))
