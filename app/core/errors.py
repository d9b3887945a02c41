"""
Expected, caller-recoverable failures raised by the OTP engine, the booking
scheduler and the auth/KYC orchestration.

The core never raises HTTPException; app.main maps these to responses.
Anything that is not a DomainError is treated as an unexpected failure.
"""
from fastapi import status


class DomainError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "DOMAIN_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class NotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class ForbiddenError(DomainError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"


class UnauthorizedError(DomainError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"


class InvalidInputError(DomainError):
    code = "INVALID_INPUT"


class InvalidStateError(DomainError):
    code = "INVALID_STATE"


class ConflictError(DomainError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"


class RateLimitedError(DomainError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "RATE_LIMITED"

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(f"Please wait {retry_after_seconds} seconds before requesting a new OTP")
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self) -> dict:
        return {**super().to_dict(), "retry_after_seconds": self.retry_after_seconds}


class ExpiredError(DomainError):
    code = "OTP_EXPIRED"

    def __init__(self, message: str = "Invalid or expired OTP") -> None:
        super().__init__(message)


class MaxAttemptsExceededError(DomainError):
    code = "OTP_MAX_ATTEMPTS"

    def __init__(self, message: str = "Maximum verification attempts exceeded") -> None:
        super().__init__(message)


class InvalidCodeError(DomainError):
    code = "OTP_INVALID"

    def __init__(self, message: str = "Invalid OTP") -> None:
        super().__init__(message)


class WindowExpiredError(DomainError):
    code = "CANCELLATION_WINDOW_EXPIRED"

    def __init__(self, window_hours: float) -> None:
        hours = int(window_hours) if float(window_hours).is_integer() else window_hours
        super().__init__(f"Cancellation window of {hours} hours has passed")
        self.window_hours = window_hours

    def to_dict(self) -> dict:
        return {**super().to_dict(), "window_hours": self.window_hours}
