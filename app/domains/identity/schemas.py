from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from app.domains.identity.models import LicenseStatus, RegistrationStep, UserRole
from app.utils.phone import E164_PATTERN


class OTPSendIn(BaseModel):
    phone: str = Field(pattern=E164_PATTERN, examples=["+919876543210"])
    role: Literal["RENTER", "MERCHANT", "ADMIN"]


class OTPSendOut(BaseModel):
    message: str
    phone: str


class OTPVerifyIn(BaseModel):
    phone: str = Field(pattern=E164_PATTERN)
    otp: str = Field(min_length=4, max_length=10)
    role: Literal["RENTER", "MERCHANT", "ADMIN"]


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    phone: str
    role: UserRole
    phone_verified: bool
    registration_step: RegistrationStep
    license_status: LicenseStatus
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    business_name: str | None = None
    created_at: datetime


class TokenPairOut(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class SessionOut(TokenPairOut):
    user: UserOut


class RefreshTokenIn(BaseModel):
    refresh_token: str = Field(min_length=1)


class ProfileIn(BaseModel):
    first_name: str = Field(min_length=1, max_length=64)
    last_name: str = Field(min_length=1, max_length=64)
    email: str | None = Field(default=None, max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    business_name: str | None = Field(default=None, max_length=128)
