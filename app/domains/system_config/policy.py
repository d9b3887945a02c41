import logging
import math
from typing import Protocol

from sqlalchemy.orm import Session

from app.domains.system_config.models import SystemConfig

logger = logging.getLogger(__name__)

CANCELLATION_WINDOW_HOURS = "booking.cancellation_window_hours"
OTP_EXPIRY_MINUTES = "otp.expiry_minutes"
OTP_MAX_ATTEMPTS = "otp.max_attempts"
OTP_RESEND_COOLDOWN_SECONDS = "otp.resend_cooldown_seconds"


class PolicySource(Protocol):
    def get(self, key: str) -> str | None: ...


class DbPolicySource:
    """Reads system_config on every call so operators can retune values without a restart."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, key: str) -> str | None:
        row = self.db.get(SystemConfig, key, populate_existing=True)
        return row.value if row else None


class StaticPolicySource:
    def __init__(self, values: dict[str, str] | None = None) -> None:
        self.values = dict(values or {})

    def get(self, key: str) -> str | None:
        return self.values.get(key)


def get_float(source: PolicySource, key: str, default: float, *, minimum: float = 0) -> float:
    raw = source.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Unparsable policy value key=%s value=%r; using default %s", key, raw, default)
        return default
    if not math.isfinite(value) or value < minimum:
        logger.warning("Out of range policy value key=%s value=%r; using default %s", key, raw, default)
        return default
    return value


def get_int(source: PolicySource, key: str, default: int, *, minimum: int = 0) -> int:
    raw = source.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("Unparsable policy value key=%s value=%r; using default %s", key, raw, default)
        return default
    if value < minimum:
        logger.warning("Out of range policy value key=%s value=%r; using default %s", key, raw, default)
        return default
    return value
