import logging
from datetime import datetime, timedelta

import jwt
from sqlalchemy.orm import Session

from app.core.clock import ensure_utc
from app.core.config import settings
from app.core.errors import (
    ConflictError,
    ForbiddenError,
    InvalidInputError,
    RateLimitedError,
    UnauthorizedError,
)
from app.core.security import (
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    hash_refresh_token,
)
from app.core.store import CredentialStore
from app.domains.identity.models import RegistrationStep, User, UserRole
from app.domains.otp.engine import OtpEngine
from app.utils.phone import mask_phone

logger = logging.getLogger(__name__)

OTP_SENT_MESSAGE = "If this number is registered, an OTP has been sent."


def _role_mismatch(user: User) -> ForbiddenError:
    registered_as = user.role.value.capitalize()
    return ForbiddenError(f"This number is already registered as a {registered_as}. Please use the correct app.")


def request_otp(store: CredentialStore, engine: OtpEngine, *, phone: str, role: str) -> dict:
    existing = store.find_user_by_phone(phone)
    if existing is not None and existing.role.value != role:
        raise _role_mismatch(existing)

    try:
        engine.send(phone)
    except RateLimitedError:
        raise
    except Exception:
        # Anything but the cooldown stays hidden from the caller.
        store.db.rollback()
        logger.exception("OTP send failed for %s", mask_phone(phone))
    return {"message": OTP_SENT_MESSAGE, "phone": phone}


def issue_tokens(store: CredentialStore, user: User, *, now: datetime) -> dict:
    access_token = create_access_token(sub=user.id, phone=user.phone, role=user.role.value)
    refresh_token = create_refresh_token(sub=user.id, phone=user.phone, role=user.role.value)
    store.create_refresh_token(
        user_id=user.id,
        token_hash=hash_refresh_token(refresh_token),
        expires_at=now + timedelta(days=settings.refresh_token_ttl_days),
    )
    return {"access_token": access_token, "refresh_token": refresh_token, "token_type": "bearer"}


def verify_and_authenticate(
    store: CredentialStore,
    engine: OtpEngine,
    *,
    phone: str,
    otp: str,
    role: str,
    now: datetime,
) -> dict:
    engine.verify(phone, otp)

    db = store.db
    user = store.find_user_by_phone(phone)
    if user is None:
        if role == UserRole.ADMIN.value:
            raise ForbiddenError("Admin accounts cannot be self-registered")
        user = User(
            phone=phone,
            role=UserRole(role),
            phone_verified=True,
            registration_step=RegistrationStep.PHONE_VERIFIED,
        )
        db.add(user)
        logger.info("Registered new %s %s", role.lower(), mask_phone(phone))
    else:
        # Never authenticate a user into the wrong portal.
        if user.role.value != role:
            raise _role_mismatch(user)
        user.phone_verified = True
        user.updated_at = now
    db.commit()
    db.refresh(user)

    return {"user": user, **issue_tokens(store, user, now=now)}


def refresh_session(store: CredentialStore, *, refresh_token: str, now: datetime) -> dict:
    token_hash = hash_refresh_token(refresh_token)
    try:
        decode_refresh_token(refresh_token)
    except jwt.ExpiredSignatureError:
        store.delete_refresh_token(token_hash)
        logger.warning("Expired refresh token attempted")
        raise UnauthorizedError("Refresh token expired")
    except (jwt.PyJWTError, KeyError):
        logger.warning("Malformed refresh token attempted")
        raise UnauthorizedError("Invalid refresh token")

    stored = store.find_refresh_token(token_hash)
    if stored is None:
        logger.warning("Invalid refresh token attempted")
        raise UnauthorizedError("Invalid refresh token")

    if ensure_utc(stored.expires_at) < now:
        store.delete_refresh_token(token_hash)
        logger.warning("Expired refresh token attempted user_id=%s", stored.user_id)
        raise UnauthorizedError("Refresh token expired")

    user = store.find_user(stored.user_id)
    if user is None:
        store.delete_refresh_token(token_hash)
        raise UnauthorizedError("User associated with token not found")

    # One-time use: only the caller that deletes the row may rotate it.
    if not store.consume_refresh_token(token_hash):
        raise UnauthorizedError("Invalid refresh token")

    return issue_tokens(store, user, now=now)


def logout(store: CredentialStore, *, refresh_token: str) -> None:
    if store.delete_refresh_token(hash_refresh_token(refresh_token)) == 0:
        logger.warning("Attempted to logout with invalid refresh token")
    else:
        logger.info("User logged out")


def get_user(db: Session, user_id: str) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise UnauthorizedError("User not found")
    return user


def complete_profile(
    db: Session,
    *,
    user_id: str,
    first_name: str,
    last_name: str,
    email: str | None,
    business_name: str | None,
    now: datetime,
) -> User:
    user = get_user(db, user_id)
    if user.registration_step != RegistrationStep.PHONE_VERIFIED:
        raise ConflictError("Invalid registration step")
    if user.role == UserRole.MERCHANT and not (business_name and business_name.strip()):
        raise InvalidInputError("business_name is required for merchants")

    user.first_name = first_name.strip()
    user.last_name = last_name.strip()
    user.email = email
    if user.role == UserRole.MERCHANT:
        user.business_name = business_name.strip()  # type: ignore[union-attr]
    user.registration_step = RegistrationStep.PROFILE_COMPLETED
    user.updated_at = now
    db.commit()
    db.refresh(user)
    return user
