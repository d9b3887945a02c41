from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from app.domains.kyc.models import KycStatus


class KycSubmitIn(BaseModel):
    license_number: str = Field(min_length=4, max_length=32)
    license_image_url: str = Field(min_length=1, max_length=1024)
    license_expiry_date: date


class KycRejectIn(BaseModel):
    reason: str = Field(min_length=1, max_length=512)


class KycOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    license_number: str
    license_expiry_date: date
    status: KycStatus
    rejection_reason: str | None = None
    verified_at: datetime | None = None
    created_at: datetime
