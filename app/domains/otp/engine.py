import logging
import math
from datetime import timedelta

from app.core.clock import Clock, FixedCodeGenerator, RandomCodeGenerator, ensure_utc
from app.core.config import settings
from app.core.errors import (
    ExpiredError,
    InvalidCodeError,
    MaxAttemptsExceededError,
    RateLimitedError,
)
from app.core.security import hash_otp, verify_otp_hash
from app.core.store import CredentialStore
from app.domains.notifications.dispatcher import NotificationKind, NotificationSink
from app.domains.system_config.policy import (
    OTP_EXPIRY_MINUTES,
    OTP_MAX_ATTEMPTS,
    OTP_RESEND_COOLDOWN_SECONDS,
    PolicySource,
    get_int,
)
from app.utils.phone import mask_phone

logger = logging.getLogger(__name__)


class OtpEngine:
    """
    Issues and verifies hashed, short-lived phone codes.

    Expiry, attempt limit and resend cooldown are read from the policy source
    on every call; the settings values are only the fallbacks.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        clock: Clock,
        policy: PolicySource,
        notifier: NotificationSink,
        code_generator: RandomCodeGenerator | FixedCodeGenerator,
        default_expiry_minutes: int = settings.otp_expiry_minutes,
        default_max_attempts: int = settings.otp_max_attempts,
        default_cooldown_seconds: int = settings.otp_resend_cooldown_seconds,
    ) -> None:
        self.store = store
        self.clock = clock
        self.policy = policy
        self.notifier = notifier
        self.code_generator = code_generator
        self.default_expiry_minutes = default_expiry_minutes
        self.default_max_attempts = default_max_attempts
        self.default_cooldown_seconds = default_cooldown_seconds

    @property
    def test_mode(self) -> bool:
        return self.code_generator.test_mode

    def expiry_minutes(self) -> int:
        return get_int(self.policy, OTP_EXPIRY_MINUTES, self.default_expiry_minutes, minimum=1)

    def max_attempts(self) -> int:
        return get_int(self.policy, OTP_MAX_ATTEMPTS, self.default_max_attempts, minimum=1)

    def cooldown_seconds(self) -> int:
        return get_int(self.policy, OTP_RESEND_COOLDOWN_SECONDS, self.default_cooldown_seconds)

    def _check_resend_cooldown(self, phone: str) -> None:
        cooldown = self.cooldown_seconds()
        if cooldown <= 0:
            return
        now = self.clock.now()
        # Checking and recording the send is one conditional write, so racing senders get one slot.
        blocking = self.store.claim_send_slot(phone, now=now, cooldown_seconds=cooldown)
        if blocking is None:
            return
        elapsed = (now - ensure_utc(blocking)).total_seconds()
        remaining = max(1, math.ceil(cooldown - elapsed))
        raise RateLimitedError(remaining)

    def send(self, phone: str) -> None:
        if not self.test_mode:
            self._check_resend_cooldown(phone)

        now = self.clock.now()
        expiry_minutes = self.expiry_minutes()
        code = self.code_generator.generate()
        self.store.create_one_time_code(
            phone=phone,
            code_hash=hash_otp(phone, code),
            expires_at=now + timedelta(minutes=expiry_minutes),
            now=now,
        )

        if self.test_mode:
            logger.info("OTP test mode: fixed code issued for %s, delivery skipped", mask_phone(phone))
            return

        try:
            self.notifier.notify(
                NotificationKind.OTP_CODE_DELIVERY,
                phone,
                {"code": code, "expiry_minutes": expiry_minutes},
            )
        except Exception:
            # Callers never learn whether delivery worked.
            logger.exception("Failed to queue OTP delivery for %s", mask_phone(phone))
        logger.info("OTP issued for %s", mask_phone(phone))

    def verify(self, phone: str, candidate_code: str) -> bool:
        now = self.clock.now()
        record = self.store.find_one_time_code(phone, now)
        if record is None:
            raise ExpiredError()

        max_attempts = self.max_attempts()
        if record.attempts >= max_attempts:
            raise MaxAttemptsExceededError()

        # Count the attempt before comparing so a crash after a wrong guess still consumes it.
        if not self.store.increment_attempts(record.id, max_attempts):
            current = self.store.find_one_time_code(phone, now)
            if current is None or current.id != record.id:
                raise ExpiredError()
            raise MaxAttemptsExceededError()

        if not verify_otp_hash(phone, (candidate_code or "").strip(), record.code_hash):
            raise InvalidCodeError()

        # Only one concurrent verifier can flip verified; the others see the code as gone.
        if not self.store.mark_verified(record.id):
            raise ExpiredError()
        self.store.delete_one_time_code(record.id)
        self.store.release_send_slot(phone)

        logger.info("OTP verified for %s", mask_phone(phone))
        return True

    def sweep_expired(self) -> int:
        now = self.clock.now()
        count = self.store.delete_expired(now)
        self.store.delete_stale_send_slots(now - timedelta(seconds=max(self.cooldown_seconds(), 0)))
        logger.info("Cleaned up %s expired OTPs", count)
        return count
