"""
Persistence boundary for the OTP engine, session issuance and the booking scheduler.

Every write that guards an invariant is a conditional statement
(``UPDATE ... WHERE <expected state>``) whose rowcount tells the caller
whether it won. No in-process locks are used.
"""
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Iterator

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError
from app.domains.booking.models import Booking, BookingStatus, Vehicle
from app.domains.identity.models import RefreshToken, User
from app.domains.otp.models import OneTimeCode, OtpSendThrottle


class CredentialStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    # --- one-time codes -------------------------------------------------

    def find_one_time_code(self, phone: str, now: datetime) -> OneTimeCode | None:
        """Most recently created unverified, unexpired code for the phone."""
        return (
            self.db.query(OneTimeCode)
            .filter(
                OneTimeCode.phone == phone,
                OneTimeCode.verified.is_(False),
                OneTimeCode.expires_at > now,
            )
            .order_by(OneTimeCode.created_at.desc())
            .populate_existing()
            .first()
        )

    def claim_send_slot(self, phone: str, *, now: datetime, cooldown_seconds: int) -> datetime | None:
        """
        Record a send for the phone unless one happened within the cooldown.

        Returns None when the slot was claimed, otherwise the ``last_sent_at``
        of the send that holds it. Only one of several concurrent callers can
        claim: the refresh is a conditional UPDATE and the first claim is an
        INSERT on the phone primary key.
        """
        result = self.db.execute(
            update(OtpSendThrottle)
            .where(
                OtpSendThrottle.phone == phone,
                OtpSendThrottle.last_sent_at <= now - timedelta(seconds=cooldown_seconds),
            )
            .values(last_sent_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            self.db.commit()
            return None
        try:
            self.db.execute(insert(OtpSendThrottle).values(phone=phone, last_sent_at=now))
            self.db.commit()
            return None
        except IntegrityError:
            self.db.rollback()
        return self.db.execute(
            select(OtpSendThrottle.last_sent_at).where(OtpSendThrottle.phone == phone)
        ).scalar_one()

    def release_send_slot(self, phone: str) -> None:
        self.db.execute(
            delete(OtpSendThrottle)
            .where(OtpSendThrottle.phone == phone)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def delete_stale_send_slots(self, before: datetime) -> int:
        result = self.db.execute(
            delete(OtpSendThrottle)
            .where(OtpSendThrottle.last_sent_at < before)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount or 0

    def create_one_time_code(self, *, phone: str, code_hash: str, expires_at: datetime, now: datetime) -> OneTimeCode:
        record = OneTimeCode(
            phone=phone,
            code_hash=code_hash,
            expires_at=expires_at,
            verified=False,
            attempts=0,
            last_sent_at=now,
            created_at=now,
        )
        self.db.add(record)
        self.db.commit()
        return record

    def increment_attempts(self, code_id: str, max_attempts: int) -> bool:
        result = self.db.execute(
            update(OneTimeCode)
            .where(
                OneTimeCode.id == code_id,
                OneTimeCode.verified.is_(False),
                OneTimeCode.attempts < max_attempts,
            )
            .values(attempts=OneTimeCode.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def mark_verified(self, code_id: str) -> bool:
        result = self.db.execute(
            update(OneTimeCode)
            .where(OneTimeCode.id == code_id, OneTimeCode.verified.is_(False))
            .values(verified=True)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def delete_one_time_code(self, code_id: str) -> None:
        self.db.execute(
            delete(OneTimeCode).where(OneTimeCode.id == code_id).execution_options(synchronize_session=False)
        )
        self.db.commit()

    def delete_expired(self, before: datetime) -> int:
        result = self.db.execute(
            delete(OneTimeCode).where(OneTimeCode.expires_at < before).execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount or 0

    # --- refresh tokens -------------------------------------------------

    def create_refresh_token(self, *, user_id: str, token_hash: str, expires_at: datetime) -> RefreshToken:
        row = RefreshToken(user_id=user_id, token_hash=token_hash, expires_at=expires_at)
        self.db.add(row)
        self.db.commit()
        return row

    def find_refresh_token(self, token_hash: str) -> RefreshToken | None:
        return self.db.query(RefreshToken).filter(RefreshToken.token_hash == token_hash).one_or_none()

    def delete_refresh_token(self, token_hash: str) -> int:
        result = self.db.execute(
            delete(RefreshToken)
            .where(RefreshToken.token_hash == token_hash)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount or 0

    def consume_refresh_token(self, token_hash: str) -> bool:
        return self.delete_refresh_token(token_hash) == 1

    # --- users / vehicles -----------------------------------------------

    def find_user(self, user_id: str) -> User | None:
        return self.db.get(User, user_id)

    def find_user_by_phone(self, phone: str) -> User | None:
        return self.db.query(User).filter(User.phone == phone).one_or_none()

    def find_vehicle(self, vehicle_id: str) -> Vehicle | None:
        return self.db.get(Vehicle, vehicle_id)

    # --- bookings -------------------------------------------------------

    @contextmanager
    def vehicle_transaction(self, vehicle_id: str) -> Iterator[None]:
        """
        Serialize booking inserts per vehicle.

        The first statement is a write to the vehicle row, which takes the row
        lock (PostgreSQL) or the database write lock (SQLite) until commit, so
        an overlap check made inside the block cannot be invalidated by a
        concurrent insert for the same vehicle.
        """
        try:
            result = self.db.execute(
                update(Vehicle)
                .where(Vehicle.id == vehicle_id)
                .values(booking_seq=Vehicle.booking_seq + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise NotFoundError("Vehicle not found")
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def find_booking(self, booking_id: str) -> Booking | None:
        return self.db.get(Booking, booking_id, populate_existing=True)

    def find_overlapping(
        self,
        vehicle_id: str,
        start: datetime,
        end: datetime,
        statuses: Iterable[BookingStatus],
    ) -> Booking | None:
        return (
            self.db.query(Booking)
            .filter(
                Booking.vehicle_id == vehicle_id,
                Booking.status.in_(list(statuses)),
                Booking.start_date < end,
                Booking.end_date > start,
            )
            .first()
        )

    def create_booking(self, **fields) -> Booking:
        booking = Booking(**fields)
        self.db.add(booking)
        self.db.flush()
        return booking

    def update_booking_status(
        self,
        booking_id: str,
        *,
        expected: BookingStatus,
        new: BookingStatus,
        fields: dict | None = None,
    ) -> Booking | None:
        """Returns the updated booking, or None when the status was no longer ``expected``."""
        values = {"status": new, **(fields or {})}
        result = self.db.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            return None
        self.db.commit()
        return self.find_booking(booking_id)

    def list_bookings(self, *, renter_id: str | None = None, merchant_id: str | None = None) -> list[Booking]:
        q = self.db.query(Booking)
        if renter_id is not None:
            q = q.filter(Booking.renter_id == renter_id)
        if merchant_id is not None:
            q = q.filter(Booking.merchant_id == merchant_id)
        return q.order_by(Booking.created_at.desc()).all()

    def merchant_totals(self, merchant_id: str, *, month_start: datetime, month_end: datetime) -> dict:
        def _sum(*criteria) -> Decimal:
            value = self.db.execute(
                select(func.coalesce(func.sum(Booking.total_price), 0)).where(
                    Booking.merchant_id == merchant_id, *criteria
                )
            ).scalar_one()
            return Decimal(str(value))

        def _count(*criteria) -> int:
            return int(
                self.db.execute(
                    select(func.count(Booking.id)).where(Booking.merchant_id == merchant_id, *criteria)
                ).scalar_one()
            )

        return {
            "current_month_earnings": _sum(
                Booking.status.in_([BookingStatus.ACCEPTED, BookingStatus.COMPLETED]),
                Booking.start_date >= month_start,
                Booking.start_date < month_end,
            ),
            "total_earnings": _sum(Booking.status == BookingStatus.COMPLETED),
            "active_count": _count(Booking.status.in_([BookingStatus.PENDING, BookingStatus.ACCEPTED])),
            "total_count": _count(),
        }
