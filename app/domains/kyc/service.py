import logging
from datetime import date, datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.errors import ConflictError, ForbiddenError, InvalidInputError, InvalidStateError, NotFoundError
from app.domains.identity.models import LicenseStatus, RegistrationStep, User, UserRole
from app.domains.kyc.models import KycStatus, KycSubmission
from app.domains.notifications.dispatcher import NotificationKind, NotificationSink

logger = logging.getLogger(__name__)


def _get_user(db: Session, user_id: str) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def _get_pending(db: Session, kyc_id: str) -> KycSubmission:
    kyc = db.get(KycSubmission, kyc_id, populate_existing=True)
    if kyc is None:
        raise NotFoundError("KYC not found")
    if kyc.status != KycStatus.PENDING:
        raise InvalidStateError("KYC is not pending")
    return kyc


def _close_pending(db: Session, kyc_id: str, **values) -> None:
    # Only one reviewer decision can move a submission out of PENDING.
    result = db.execute(
        update(KycSubmission)
        .where(KycSubmission.id == kyc_id, KycSubmission.status == KycStatus.PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise InvalidStateError("KYC is not pending")


def submit_kyc(
    db: Session,
    *,
    user_id: str,
    license_number: str,
    license_image_url: str,
    license_expiry_date: date,
    now: datetime,
) -> KycSubmission:
    user = _get_user(db, user_id)
    if user.role != UserRole.RENTER:
        raise ForbiddenError("KYC is only for renters")
    if user.registration_step != RegistrationStep.PROFILE_COMPLETED:
        raise ConflictError("Please complete your profile first")
    if db.query(KycSubmission).filter(KycSubmission.user_id == user_id).one_or_none() is not None:
        raise ConflictError("KYC already submitted")
    if license_expiry_date <= now.date():
        raise InvalidInputError("Driving license has expired")

    kyc = KycSubmission(
        user_id=user_id,
        license_number=license_number.strip(),
        license_image_url=license_image_url,
        license_expiry_date=license_expiry_date,
        status=KycStatus.PENDING,
        created_at=now,
    )
    db.add(kyc)
    user.registration_step = RegistrationStep.KYC_PENDING
    user.license_status = LicenseStatus.PENDING
    user.updated_at = now
    db.commit()
    db.refresh(kyc)
    return kyc


def get_kyc_for_user(db: Session, user_id: str) -> KycSubmission:
    kyc = db.query(KycSubmission).filter(KycSubmission.user_id == user_id).one_or_none()
    if kyc is None:
        raise NotFoundError("KYC not found")
    return kyc


def list_pending(db: Session) -> list[KycSubmission]:
    return (
        db.query(KycSubmission)
        .filter(KycSubmission.status == KycStatus.PENDING)
        .order_by(KycSubmission.created_at.asc())
        .all()
    )


def approve_kyc(db: Session, notifier: NotificationSink, *, kyc_id: str, now: datetime) -> KycSubmission:
    kyc = _get_pending(db, kyc_id)
    user = _get_user(db, kyc.user_id)

    _close_pending(db, kyc.id, status=KycStatus.APPROVED, verified_at=now)
    user.registration_step = RegistrationStep.KYC_APPROVED
    user.license_status = LicenseStatus.APPROVED
    user.updated_at = now
    db.commit()
    db.refresh(kyc)
    logger.info("KYC approved for user %s", user.id)

    try:
        notifier.notify(NotificationKind.LICENSE_APPROVED, user.email, {"first_name": user.first_name})
    except Exception:
        logger.exception("Failed to queue license approval notification for user %s", user.id)
    return kyc


def reject_kyc(db: Session, *, kyc_id: str, reason: str, now: datetime) -> KycSubmission:
    kyc = _get_pending(db, kyc_id)
    user = _get_user(db, kyc.user_id)

    _close_pending(db, kyc.id, status=KycStatus.REJECTED, rejection_reason=reason)
    user.registration_step = RegistrationStep.PROFILE_COMPLETED
    user.license_status = LicenseStatus.REJECTED
    user.updated_at = now
    db.commit()
    db.refresh(kyc)
    logger.info("KYC rejected for user %s: %s", user.id, reason)
    return kyc
