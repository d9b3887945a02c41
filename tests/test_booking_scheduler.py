"""
Booking scheduler: preconditions, pricing, overlap, transitions and the
cancellation window.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.core.errors import (
    ConflictError,
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    WindowExpiredError,
)
from app.core.store import CredentialStore
from app.domains.booking.models import Booking, BookingStatus
from app.domains.booking.scheduler import BookingScheduler, compute_total_price, month_bounds
from app.domains.identity.models import LicenseStatus, UserRole
from app.domains.notifications.dispatcher import NotificationKind
from app.domains.system_config.policy import StaticPolicySource
from tests.fakes import NOW, ExplodingNotifier


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture()
def parties(make_user, make_vehicle):
    renter = make_user(UserRole.RENTER)
    merchant = make_user(UserRole.MERCHANT)
    vehicle = make_vehicle(merchant)
    return renter, merchant, vehicle


# --- pricing ---------------------------------------------------------------


def test_price_two_full_days():
    assert compute_total_price(Decimal("100"), utc(2026, 2, 1, 10), utc(2026, 2, 3, 10)) == Decimal("200")


def test_price_partial_day_rounds_up():
    assert compute_total_price(Decimal("100"), utc(2026, 2, 1, 10), utc(2026, 2, 1, 12)) == Decimal("100")
    assert compute_total_price(Decimal("100"), utc(2026, 2, 1, 10), utc(2026, 2, 2, 11)) == Decimal("200")


def test_month_bounds_wraps_december():
    start, end = month_bounds(utc(2026, 12, 15, 8))
    assert start == utc(2026, 12, 1)
    assert end == utc(2027, 1, 1)


# --- create ----------------------------------------------------------------


def test_create_persists_pending_booking(scheduler, parties, notifier, db):
    renter, merchant, vehicle = parties
    booking = scheduler.create(renter.id, vehicle.id, utc(2026, 2, 1, 10), utc(2026, 2, 3, 10), notes="Airport pickup")

    assert booking.status == BookingStatus.PENDING
    assert booking.merchant_id == merchant.id
    assert booking.total_price == Decimal("200")
    assert booking.renter_notes == "Airport pickup"
    assert db.query(Booking).count() == 1

    kind, recipient, data = notifier.sent[0]
    assert kind == NotificationKind.NEW_BOOKING
    assert recipient == merchant.email
    assert data["notes"] == "Airport pickup"


def test_create_unknown_renter(scheduler, parties):
    _, _, vehicle = parties
    with pytest.raises(NotFoundError, match="User not found"):
        scheduler.create("nobody", vehicle.id, utc(2026, 2, 1), utc(2026, 2, 2))


def test_create_requires_renter_role(scheduler, parties):
    _, merchant, vehicle = parties
    with pytest.raises(ForbiddenError, match="Only renters"):
        scheduler.create(merchant.id, vehicle.id, utc(2026, 2, 1), utc(2026, 2, 2))


def test_license_checked_before_vehicle(scheduler, make_user):
    """Test that precondition order holds: license gate fires before the vehicle lookup."""
    renter = make_user(UserRole.RENTER, license_status=LicenseStatus.PENDING)
    with pytest.raises(ForbiddenError, match="license must be approved"):
        scheduler.create(renter.id, "missing-vehicle", utc(2026, 2, 1), utc(2026, 2, 2))


def test_create_unknown_vehicle(scheduler, parties):
    renter, _, _ = parties
    with pytest.raises(NotFoundError, match="Vehicle not found"):
        scheduler.create(renter.id, "missing-vehicle", utc(2026, 2, 1), utc(2026, 2, 2))


def test_create_unavailable_vehicle(scheduler, parties, make_vehicle):
    renter, merchant, _ = parties
    parked = make_vehicle(merchant, is_available=False)
    with pytest.raises(InvalidStateError, match="not available"):
        scheduler.create(renter.id, parked.id, utc(2026, 2, 1), utc(2026, 2, 2))


def test_create_start_must_be_in_future(scheduler, parties):
    renter, _, vehicle = parties
    with pytest.raises(InvalidInputError, match="future"):
        scheduler.create(renter.id, vehicle.id, NOW, NOW + timedelta(days=1))


def test_create_end_must_follow_start(scheduler, parties):
    renter, _, vehicle = parties
    with pytest.raises(InvalidInputError, match="End date"):
        scheduler.create(renter.id, vehicle.id, utc(2026, 2, 2), utc(2026, 2, 2))


def test_overlap_is_rejected(scheduler, make_user, make_vehicle):
    """Test that a second overlapping request on vehicle 7 is a conflict."""
    renter = make_user(UserRole.RENTER)
    merchant = make_user(UserRole.MERCHANT)
    make_vehicle(merchant, vehicle_id="7")

    scheduler.create(renter.id, "7", utc(2026, 1, 10), utc(2026, 1, 12))
    with pytest.raises(ConflictError, match="already booked"):
        scheduler.create(renter.id, "7", utc(2026, 1, 11), utc(2026, 1, 13))


def test_adjacent_ranges_do_not_overlap(scheduler, parties):
    renter, _, vehicle = parties
    scheduler.create(renter.id, vehicle.id, utc(2026, 1, 10), utc(2026, 1, 12))
    second = scheduler.create(renter.id, vehicle.id, utc(2026, 1, 12), utc(2026, 1, 14))
    assert second.status == BookingStatus.PENDING


def test_terminal_bookings_release_the_vehicle(scheduler, parties):
    renter, merchant, vehicle = parties
    first = scheduler.create(renter.id, vehicle.id, utc(2026, 1, 10), utc(2026, 1, 12))
    scheduler.reject(first.id, merchant.id)
    again = scheduler.create(renter.id, vehicle.id, utc(2026, 1, 10), utc(2026, 1, 12))
    assert again.status == BookingStatus.PENDING


def test_failed_create_leaves_store_usable(scheduler, parties, db):
    renter, _, vehicle = parties
    scheduler.create(renter.id, vehicle.id, utc(2026, 1, 10), utc(2026, 1, 12))
    with pytest.raises(ConflictError):
        scheduler.create(renter.id, vehicle.id, utc(2026, 1, 11), utc(2026, 1, 13))
    scheduler.create(renter.id, vehicle.id, utc(2026, 1, 20), utc(2026, 1, 21))
    assert db.query(Booking).count() == 2


def test_notification_failure_keeps_booking(store, clock, policy, parties, db):
    renter, _, vehicle = parties
    scheduler = BookingScheduler(store, clock=clock, policy=policy, notifier=ExplodingNotifier())
    booking = scheduler.create(renter.id, vehicle.id, utc(2026, 2, 1), utc(2026, 2, 2))
    assert db.get(Booking, booking.id) is not None


# --- transitions -----------------------------------------------------------


def test_accept_records_time_notes_and_notifies_renter(scheduler, parties, notifier, clock):
    renter, merchant, vehicle = parties
    booking = scheduler.create(renter.id, vehicle.id, utc(2026, 2, 1), utc(2026, 2, 2))
    clock.advance(hours=1)

    accepted = scheduler.accept(booking.id, merchant.id, "Keys at the front desk")
    assert accepted.status == BookingStatus.ACCEPTED
    assert accepted.merchant_notes == "Keys at the front desk"
    assert accepted.accepted_at.replace(tzinfo=timezone.utc) == clock.now()
    assert notifier.sent[-1][0] == NotificationKind.BOOKING_ACCEPTED
    assert notifier.sent[-1][1] == renter.email



def test_transition_stamps_updated_at_from_clock(scheduler, parties, clock):
    renter, merchant, vehicle = parties
    booking = scheduler.create(renter.id, vehicle.id, utc(2026, 2, 1), utc(2026, 2, 2))
    clock.advance(hours=3)

    rejected = scheduler.reject(booking.id, merchant.id)
    assert rejected.updated_at.replace(tzinfo=timezone.utc) == clock.now()
    assert rejected.rejected_at.replace(tzinfo=timezone.utc) == clock.now()


def test_only_owning_merchant_can_transition(scheduler, parties, make_user):
    renter, _, vehicle = parties
    other = make_user(UserRole.MERCHANT)
    booking = scheduler.create(renter.id, vehicle.id, utc(2026, 2, 1), utc(2026, 2, 2))
    with pytest.raises(ForbiddenError):
        scheduler.accept(booking.id, other.id)
    with pytest.raises(ForbiddenError):
        scheduler.reject(booking.id, other.id)
    with pytest.raises(ForbiddenError):
        scheduler.complete(booking.id, other.id)


def test_transition_unknown_booking(scheduler, parties):
    _, merchant, _ = parties
    with pytest.raises(NotFoundError):
        scheduler.accept("missing", merchant.id)


def test_complete_requires_accepted(scheduler, parties, notifier):
    renter, merchant, vehicle = parties
    booking = scheduler.create(renter.id, vehicle.id, utc(2026, 2, 1), utc(2026, 2, 2))
    with pytest.raises(InvalidStateError):
        scheduler.complete(booking.id, merchant.id)
    scheduler.accept(booking.id, merchant.id)
    done = scheduler.complete(booking.id, merchant.id)
    assert done.status == BookingStatus.COMPLETED
    assert done.completed_at is not None
    assert done.accepted_at is None
    assert notifier.kinds()[-1] == NotificationKind.BOOKING_COMPLETED


@pytest.mark.parametrize("terminal", ["rejected", "completed", "cancelled"])
def test_terminal_states_accept_no_transition(scheduler, parties, terminal):
    renter, merchant, vehicle = parties
    booking = scheduler.create(renter.id, vehicle.id, utc(2026, 2, 1), utc(2026, 2, 2))
    if terminal == "rejected":
        scheduler.reject(booking.id, merchant.id)
    elif terminal == "completed":
        scheduler.accept(booking.id, merchant.id)
        scheduler.complete(booking.id, merchant.id)
    else:
        scheduler.cancel(booking.id, renter.id)

    for attempt in (
        lambda: scheduler.accept(booking.id, merchant.id),
        lambda: scheduler.reject(booking.id, merchant.id),
        lambda: scheduler.complete(booking.id, merchant.id),
        lambda: scheduler.cancel(booking.id, renter.id),
    ):
        with pytest.raises(InvalidStateError):
            attempt()


def test_stale_read_loses_conditional_update(session_factory, clock, policy, notifier, parties):
    """Test that a transition decided on a stale status cannot overwrite a newer one."""
    renter, merchant, vehicle = parties
    first = BookingScheduler(CredentialStore(session_factory()), clock=clock, policy=policy, notifier=notifier)
    second = BookingScheduler(CredentialStore(session_factory()), clock=clock, policy=policy, notifier=notifier)

    booking = first.create(renter.id, vehicle.id, utc(2026, 2, 1), utc(2026, 2, 2))
    stale = second.store.find_booking(booking.id)
    first.reject(booking.id, merchant.id)

    assert second.store.update_booking_status(stale.id, expected=BookingStatus.PENDING, new=BookingStatus.ACCEPTED) is None
    with pytest.raises(InvalidStateError):
        second.accept(booking.id, merchant.id)
    assert second.store.find_booking(booking.id).status == BookingStatus.REJECTED

    first.store.db.close()
    second.store.db.close()


# --- cancellation window ---------------------------------------------------


def test_cancel_inside_window_fails(scheduler, parties, clock):
    renter, _, vehicle = parties
    booking = scheduler.create(renter.id, vehicle.id, clock.now() + timedelta(hours=2), clock.now() + timedelta(days=1))
    with pytest.raises(WindowExpiredError) as exc:
        scheduler.cancel(booking.id, renter.id)
    assert exc.value.window_hours == 4
    assert exc.value.message == "Cancellation window of 4 hours has passed"


def test_cancel_outside_window_succeeds(scheduler, parties, clock, notifier):
    renter, merchant, vehicle = parties
    booking = scheduler.create(renter.id, vehicle.id, clock.now() + timedelta(hours=10), clock.now() + timedelta(days=1))
    cancelled = scheduler.cancel(booking.id, renter.id)
    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    assert notifier.sent[-1][0] == NotificationKind.BOOKING_CANCELLED
    assert notifier.sent[-1][1] == merchant.email


def test_cancel_exactly_at_window_boundary_succeeds(scheduler, parties, clock):
    renter, _, vehicle = parties
    booking = scheduler.create(renter.id, vehicle.id, clock.now() + timedelta(hours=4), clock.now() + timedelta(days=1))
    assert scheduler.cancel(booking.id, renter.id).status == BookingStatus.CANCELLED


def test_cancel_accepted_booking(scheduler, parties, clock):
    renter, merchant, vehicle = parties
    booking = scheduler.create(renter.id, vehicle.id, clock.now() + timedelta(days=2), clock.now() + timedelta(days=3))
    scheduler.accept(booking.id, merchant.id)
    clock.advance(hours=1)

    cancelled = scheduler.cancel(booking.id, renter.id)
    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.accepted_at is None
    assert cancelled.cancelled_at.replace(tzinfo=timezone.utc) == clock.now()


def test_cancel_by_other_renter_is_forbidden(scheduler, parties, make_user, clock):
    renter, _, vehicle = parties
    stranger = make_user(UserRole.RENTER)
    booking = scheduler.create(renter.id, vehicle.id, clock.now() + timedelta(days=2), clock.now() + timedelta(days=3))
    with pytest.raises(ForbiddenError):
        scheduler.cancel(booking.id, stranger.id)


def test_cancellation_window_read_at_call_time(store, clock, notifier, parties):
    renter, _, vehicle = parties
    policy = StaticPolicySource({"booking.cancellation_window_hours": "24"})
    scheduler = BookingScheduler(store, clock=clock, policy=policy, notifier=notifier)
    booking = scheduler.create(renter.id, vehicle.id, clock.now() + timedelta(hours=10), clock.now() + timedelta(days=1))

    with pytest.raises(WindowExpiredError, match="24 hours"):
        scheduler.cancel(booking.id, renter.id)

    policy.values["booking.cancellation_window_hours"] = "1.5"
    assert scheduler.cancel(booking.id, renter.id).status == BookingStatus.CANCELLED


def test_unparsable_window_falls_back_to_default(store, clock, notifier, parties):
    renter, _, vehicle = parties
    policy = StaticPolicySource({"booking.cancellation_window_hours": "soon"})
    scheduler = BookingScheduler(store, clock=clock, policy=policy, notifier=notifier, default_cancellation_window_hours=4)
    booking = scheduler.create(renter.id, vehicle.id, clock.now() + timedelta(hours=3), clock.now() + timedelta(days=1))
    with pytest.raises(WindowExpiredError, match="4 hours"):
        scheduler.cancel(booking.id, renter.id)


# --- queries ---------------------------------------------------------------


def test_merchant_stats(scheduler, parties, make_user, make_vehicle):
    renter, merchant, vehicle = parties
    accepted = scheduler.create(renter.id, vehicle.id, utc(2026, 1, 10), utc(2026, 1, 12))
    scheduler.accept(accepted.id, merchant.id)
    completed = scheduler.create(renter.id, vehicle.id, utc(2026, 1, 20), utc(2026, 1, 21))
    scheduler.accept(completed.id, merchant.id)
    scheduler.complete(completed.id, merchant.id)
    scheduler.create(renter.id, vehicle.id, utc(2026, 2, 2), utc(2026, 2, 3))
    cancelled = scheduler.create(renter.id, vehicle.id, utc(2026, 1, 25), utc(2026, 1, 26))
    scheduler.cancel(cancelled.id, renter.id)

    other_merchant = make_user(UserRole.MERCHANT)
    other_vehicle = make_vehicle(other_merchant)
    scheduler.create(renter.id, other_vehicle.id, utc(2026, 1, 10), utc(2026, 1, 12))

    stats = scheduler.merchant_stats(merchant.id)
    assert stats["current_month_earnings"] == Decimal("300")
    assert stats["total_earnings"] == Decimal("100")
    assert stats["active_count"] == 2
    assert stats["total_count"] == 4


def test_listings_are_scoped(scheduler, parties, make_user):
    renter, merchant, vehicle = parties
    other_renter = make_user(UserRole.RENTER)
    scheduler.create(renter.id, vehicle.id, utc(2026, 1, 10), utc(2026, 1, 12))
    scheduler.create(other_renter.id, vehicle.id, utc(2026, 1, 20), utc(2026, 1, 22))

    assert len(scheduler.list_for_renter(renter.id)) == 1
    assert len(scheduler.list_for_renter(other_renter.id)) == 1
    assert len(scheduler.list_for_merchant(merchant.id)) == 2