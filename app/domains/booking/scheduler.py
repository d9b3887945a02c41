import logging
from datetime import datetime, timedelta
from decimal import Decimal

from app.core.clock import Clock, ensure_utc
from app.core.config import settings
from app.core.errors import (
    ConflictError,
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    WindowExpiredError,
)
from app.core.store import CredentialStore
from app.domains.booking.models import ACTIVE_STATUSES, Booking, BookingStatus, Vehicle
from app.domains.identity.models import LicenseStatus, User, UserRole
from app.domains.notifications.dispatcher import NotificationKind, NotificationSink
from app.domains.system_config.policy import CANCELLATION_WINDOW_HOURS, PolicySource, get_float

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)

# Status to the timestamp it stamps; a transition clears the other three.
TRANSITION_STAMPS = {
    BookingStatus.ACCEPTED: "accepted_at",
    BookingStatus.REJECTED: "rejected_at",
    BookingStatus.COMPLETED: "completed_at",
    BookingStatus.CANCELLED: "cancelled_at",
}


def compute_total_price(price_per_day: Decimal, start: datetime, end: datetime) -> Decimal:
    # Partial days round up: 2 hours bills as one day.
    days, remainder = divmod(end - start, ONE_DAY)
    if remainder:
        days += 1
    return Decimal(str(price_per_day)) * days


def month_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


class BookingScheduler:
    def __init__(
        self,
        store: CredentialStore,
        *,
        clock: Clock,
        policy: PolicySource,
        notifier: NotificationSink,
        default_cancellation_window_hours: float = settings.booking_cancellation_window_hours,
    ) -> None:
        self.store = store
        self.clock = clock
        self.policy = policy
        self.notifier = notifier
        self.default_cancellation_window_hours = default_cancellation_window_hours

    def cancellation_window_hours(self) -> float:
        return get_float(self.policy, CANCELLATION_WINDOW_HOURS, self.default_cancellation_window_hours)

    # --- create ---------------------------------------------------------

    def create(
        self,
        renter_id: str,
        vehicle_id: str,
        start_date: datetime,
        end_date: datetime,
        notes: str | None = None,
    ) -> Booking:
        renter = self.store.find_user(renter_id)
        if renter is None:
            raise NotFoundError("User not found")
        if renter.role != UserRole.RENTER:
            raise ForbiddenError("Only renters can create bookings")
        if renter.license_status != LicenseStatus.APPROVED:
            raise ForbiddenError("Your driving license must be approved before booking")

        vehicle = self.store.find_vehicle(vehicle_id)
        if vehicle is None:
            raise NotFoundError("Vehicle not found")
        if not vehicle.is_available:
            raise InvalidStateError("Vehicle is not available")

        start = ensure_utc(start_date)
        end = ensure_utc(end_date)
        if start <= self.clock.now():
            raise InvalidInputError("Start date must be in the future")
        if end <= start:
            raise InvalidInputError("End date must be after start date")

        total_price = compute_total_price(vehicle.price_per_day, start, end)
        merchant_id = vehicle.merchant_id

        with self.store.vehicle_transaction(vehicle_id):
            if self.store.find_overlapping(vehicle_id, start, end, ACTIVE_STATUSES) is not None:
                raise ConflictError("Vehicle is already booked for the selected dates")
            booking = self.store.create_booking(
                renter_id=renter_id,
                merchant_id=merchant_id,
                vehicle_id=vehicle_id,
                start_date=start,
                end_date=end,
                total_price=total_price,
                renter_notes=notes,
                status=BookingStatus.PENDING,
            )

        logger.info("Booking %s created vehicle=%s renter=%s", booking.id, vehicle_id, renter_id)
        self._notify(NotificationKind.NEW_BOOKING, merchant_id, booking, notes=notes)
        return booking

    # --- transitions ----------------------------------------------------

    def _load_owned(self, booking_id: str, *, caller_id: str, as_merchant: bool) -> Booking:
        booking = self.store.find_booking(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        owner = booking.merchant_id if as_merchant else booking.renter_id
        if owner != caller_id:
            raise ForbiddenError("You can only manage your own bookings")
        return booking

    def _transition(
        self,
        booking: Booking,
        *,
        allowed_from: tuple[BookingStatus, ...],
        to: BookingStatus,
        now: datetime,
        state_message: str,
        fields: dict | None = None,
    ) -> Booking:
        if booking.status not in allowed_from:
            raise InvalidStateError(state_message)
        previous = booking.status
        values: dict = {column: None for column in TRANSITION_STAMPS.values()}
        values[TRANSITION_STAMPS[to]] = now
        values["updated_at"] = now
        values.update(fields or {})
        # Re-checked by the conditional update; a concurrent transition makes this return None.
        updated = self.store.update_booking_status(booking.id, expected=previous, new=to, fields=values)
        if updated is None:
            raise InvalidStateError(state_message)
        logger.info("Booking %s %s -> %s", updated.id, previous.value, to.value)
        return updated

    def accept(self, booking_id: str, caller_merchant_id: str, notes: str | None = None) -> Booking:
        booking = self._load_owned(booking_id, caller_id=caller_merchant_id, as_merchant=True)
        fields: dict = {}
        if notes is not None:
            fields["merchant_notes"] = notes
        updated = self._transition(
            booking,
            allowed_from=(BookingStatus.PENDING,),
            to=BookingStatus.ACCEPTED,
            now=self.clock.now(),
            fields=fields,
            state_message="Only pending bookings can be accepted",
        )
        self._notify(NotificationKind.BOOKING_ACCEPTED, updated.renter_id, updated, notes=notes)
        return updated

    def reject(self, booking_id: str, caller_merchant_id: str, notes: str | None = None) -> Booking:
        booking = self._load_owned(booking_id, caller_id=caller_merchant_id, as_merchant=True)
        fields: dict = {}
        if notes is not None:
            fields["merchant_notes"] = notes
        updated = self._transition(
            booking,
            allowed_from=(BookingStatus.PENDING,),
            to=BookingStatus.REJECTED,
            now=self.clock.now(),
            fields=fields,
            state_message="Only pending bookings can be rejected",
        )
        self._notify(NotificationKind.BOOKING_REJECTED, updated.renter_id, updated, notes=notes)
        return updated

    def complete(self, booking_id: str, caller_merchant_id: str) -> Booking:
        booking = self._load_owned(booking_id, caller_id=caller_merchant_id, as_merchant=True)
        updated = self._transition(
            booking,
            allowed_from=(BookingStatus.ACCEPTED,),
            to=BookingStatus.COMPLETED,
            now=self.clock.now(),
            state_message="Only accepted bookings can be completed",
        )
        self._notify(NotificationKind.BOOKING_COMPLETED, updated.renter_id, updated)
        return updated

    def cancel(self, booking_id: str, caller_renter_id: str) -> Booking:
        booking = self._load_owned(booking_id, caller_id=caller_renter_id, as_merchant=False)
        if booking.status not in ACTIVE_STATUSES:
            raise InvalidStateError("Only pending or accepted bookings can be cancelled")

        window_hours = self.cancellation_window_hours()
        now = self.clock.now()
        hours_until_start = (ensure_utc(booking.start_date) - now).total_seconds() / 3600
        if hours_until_start < window_hours:
            raise WindowExpiredError(window_hours)

        updated = self._transition(
            booking,
            allowed_from=ACTIVE_STATUSES,
            to=BookingStatus.CANCELLED,
            now=now,
            state_message="Only pending or accepted bookings can be cancelled",
        )
        self._notify(NotificationKind.BOOKING_CANCELLED, updated.merchant_id, updated)
        return updated

    # --- queries --------------------------------------------------------

    def list_for_renter(self, renter_id: str) -> list[Booking]:
        return self.store.list_bookings(renter_id=renter_id)

    def list_for_merchant(self, merchant_id: str) -> list[Booking]:
        return self.store.list_bookings(merchant_id=merchant_id)

    def merchant_stats(self, merchant_id: str) -> dict:
        month_start, month_end = month_bounds(self.clock.now())
        return self.store.merchant_totals(merchant_id, month_start=month_start, month_end=month_end)

    # --- notifications --------------------------------------------------

    def _notify(self, kind: NotificationKind, recipient_id: str, booking: Booking, notes: str | None = None) -> None:
        try:
            recipient: User | None = self.store.find_user(recipient_id)
            vehicle: Vehicle | None = self.store.find_vehicle(booking.vehicle_id)
            data = {
                "booking_id": booking.id,
                "first_name": recipient.first_name if recipient else None,
                "vehicle": f"{vehicle.make} {vehicle.model}" if vehicle else "",
                "start_date": ensure_utc(booking.start_date).strftime("%d %b %Y %H:%M UTC"),
                "end_date": ensure_utc(booking.end_date).strftime("%d %b %Y %H:%M UTC"),
                "total_price": f"{booking.total_price:.2f}",
                "notes": notes,
            }
            self.notifier.notify(kind, recipient.email if recipient else None, data)
        except Exception:
            # The transition is already committed; a notification problem must not surface.
            logger.exception("Failed to queue %s notification for booking %s", kind.value, booking.id)
