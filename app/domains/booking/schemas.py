from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from app.domains.booking.models import BookingStatus


class BookingCreateIn(BaseModel):
    vehicle_id: str = Field(min_length=1)
    start_date: datetime
    end_date: datetime
    renter_notes: str | None = Field(default=None, max_length=1000)


class BookingStatusIn(BaseModel):
    merchant_notes: str | None = Field(default=None, max_length=1000)


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    renter_id: str
    merchant_id: str
    vehicle_id: str
    start_date: datetime
    end_date: datetime
    status: BookingStatus
    total_price: Decimal
    renter_notes: str | None = None
    merchant_notes: str | None = None
    accepted_at: datetime | None = None
    rejected_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime


class MerchantStatsOut(BaseModel):
    current_month_earnings: Decimal
    total_earnings: Decimal
    active_count: int
    total_count: int
