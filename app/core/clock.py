import logging
import secrets
from datetime import datetime, timezone
from typing import Protocol

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    # SQLite hands DateTime(timezone=True) columns back without tzinfo; values are stored as UTC.
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class RandomCodeGenerator:
    test_mode = False

    def __init__(self, length: int = 6) -> None:
        if length < 1:
            raise ValueError("OTP length must be positive")
        self.length = length

    def generate(self) -> str:
        upper = 10**self.length
        lower = 10 ** (self.length - 1)
        return str(secrets.randbelow(upper - lower) + lower)


class FixedCodeGenerator:
    """Always issues the same code. For test harnesses only: skips cooldown and delivery."""

    test_mode = True

    def __init__(self, code: str) -> None:
        if not code:
            raise ValueError("A fixed OTP code must be non-empty")
        self.code = code

    def generate(self) -> str:
        return self.code


def build_code_generator(settings) -> RandomCodeGenerator | FixedCodeGenerator:
    if settings.otp_test_code:
        logger.warning("OTP test mode is enabled: a fixed code is issued and nothing is delivered. Do not use in production!")
        return FixedCodeGenerator(settings.otp_test_code)
    return RandomCodeGenerator(settings.otp_length)
