from fastapi import APIRouter, Depends

from app.core.deps import get_booking_scheduler, require_merchant, require_renter
from app.core.security import Principal
from app.domains.booking.scheduler import BookingScheduler
from app.domains.booking.schemas import BookingCreateIn, BookingOut, BookingStatusIn, MerchantStatsOut


router = APIRouter(prefix="/bookings")


@router.post("", response_model=BookingOut, status_code=201)
def create_booking(
    payload: BookingCreateIn,
    principal: Principal = Depends(require_renter),
    scheduler: BookingScheduler = Depends(get_booking_scheduler),
) -> BookingOut:
    booking = scheduler.create(
        principal.sub,
        payload.vehicle_id,
        payload.start_date,
        payload.end_date,
        notes=payload.renter_notes,
    )
    return BookingOut.model_validate(booking)


@router.get("/renter", response_model=list[BookingOut])
def renter_bookings(
    principal: Principal = Depends(require_renter),
    scheduler: BookingScheduler = Depends(get_booking_scheduler),
) -> list[BookingOut]:
    return [BookingOut.model_validate(b) for b in scheduler.list_for_renter(principal.sub)]


@router.get("/merchant", response_model=list[BookingOut])
def merchant_bookings(
    principal: Principal = Depends(require_merchant),
    scheduler: BookingScheduler = Depends(get_booking_scheduler),
) -> list[BookingOut]:
    return [BookingOut.model_validate(b) for b in scheduler.list_for_merchant(principal.sub)]


@router.get("/merchant/stats", response_model=MerchantStatsOut)
def merchant_stats(
    principal: Principal = Depends(require_merchant),
    scheduler: BookingScheduler = Depends(get_booking_scheduler),
) -> MerchantStatsOut:
    return MerchantStatsOut(**scheduler.merchant_stats(principal.sub))


@router.patch("/{booking_id}/accept", response_model=BookingOut)
def accept_booking(
    booking_id: str,
    payload: BookingStatusIn | None = None,
    principal: Principal = Depends(require_merchant),
    scheduler: BookingScheduler = Depends(get_booking_scheduler),
) -> BookingOut:
    notes = payload.merchant_notes if payload else None
    return BookingOut.model_validate(scheduler.accept(booking_id, principal.sub, notes))


@router.patch("/{booking_id}/reject", response_model=BookingOut)
def reject_booking(
    booking_id: str,
    payload: BookingStatusIn | None = None,
    principal: Principal = Depends(require_merchant),
    scheduler: BookingScheduler = Depends(get_booking_scheduler),
) -> BookingOut:
    notes = payload.merchant_notes if payload else None
    return BookingOut.model_validate(scheduler.reject(booking_id, principal.sub, notes))


@router.patch("/{booking_id}/complete", response_model=BookingOut)
def complete_booking(
    booking_id: str,
    principal: Principal = Depends(require_merchant),
    scheduler: BookingScheduler = Depends(get_booking_scheduler),
) -> BookingOut:
    return BookingOut.model_validate(scheduler.complete(booking_id, principal.sub))


@router.patch("/{booking_id}/cancel", response_model=BookingOut)
def cancel_booking(
    booking_id: str,
    principal: Principal = Depends(require_renter),
    scheduler: BookingScheduler = Depends(get_booking_scheduler),
) -> BookingOut:
    return BookingOut.model_validate(scheduler.cancel(booking_id, principal.sub))
