import enum
import logging
from concurrent.futures import ThreadPoolExecutor
from html import escape
from typing import Callable, Protocol

from app.utils.email import EmailSender
from app.utils.phone import mask_phone
from app.utils.sms import send_otp_best_effort

logger = logging.getLogger(__name__)


class NotificationKind(str, enum.Enum):
    NEW_BOOKING = "new_booking"
    BOOKING_ACCEPTED = "booking_accepted"
    BOOKING_REJECTED = "booking_rejected"
    BOOKING_COMPLETED = "booking_completed"
    BOOKING_CANCELLED = "booking_cancelled"
    LICENSE_APPROVED = "license_approved"
    OTP_CODE_DELIVERY = "otp_code_delivery"


class NotificationSink(Protocol):
    def notify(self, kind: NotificationKind, recipient: str | None, data: dict) -> None: ...


def _booking_lines(data: dict) -> str:
    rows = [
        ("Vehicle", data.get("vehicle", "")),
        ("Start Date", data.get("start_date", "")),
        ("End Date", data.get("end_date", "")),
        ("Total Price", data.get("total_price", "")),
    ]
    if data.get("notes"):
        rows.append(("Notes", data["notes"]))
    items = "".join(f"<li><strong>{label}:</strong> {escape(str(value))}</li>" for label, value in rows)
    return f"<ul>{items}</ul>"


_SUBJECTS = {
    NotificationKind.NEW_BOOKING: "New Booking Request Received",
    NotificationKind.BOOKING_ACCEPTED: "Your Booking Has Been Accepted!",
    NotificationKind.BOOKING_REJECTED: "Booking Request Update",
    NotificationKind.BOOKING_COMPLETED: "Booking Completed - Please Leave a Review",
    NotificationKind.BOOKING_CANCELLED: "Booking Cancelled",
    NotificationKind.LICENSE_APPROVED: "Your Driving License Has Been Approved!",
}

_INTROS = {
    NotificationKind.NEW_BOOKING: "You have received a new booking request for your vehicle:",
    NotificationKind.BOOKING_ACCEPTED: "Great news! Your booking has been accepted:",
    NotificationKind.BOOKING_REJECTED: "Unfortunately, your booking request could not be accepted:",
    NotificationKind.BOOKING_COMPLETED: "Your rental is complete. We would love to hear how it went, please leave a review:",
    NotificationKind.BOOKING_CANCELLED: "The renter has cancelled this booking:",
}


def render_email(kind: NotificationKind, data: dict) -> tuple[str, str]:
    if kind not in _SUBJECTS:
        raise ValueError(f"No email template for {kind.value}")
    name = escape(str(data.get("first_name") or "there"))
    if kind == NotificationKind.LICENSE_APPROVED:
        body = (
            f"<h1>Congratulations, {name}!</h1>"
            "<p>Your driving license has been approved. You can now start booking vehicles on RentMyVroom.</p>"
        )
    else:
        body = f"<h1>Hello {name},</h1><p>{_INTROS[kind]}</p>{_booking_lines(data)}"
    return _SUBJECTS[kind], body + "<p>Best regards,<br>The RentMyVroom Team</p>"


class NotificationDispatcher:
    """
    Fire-and-forget delivery on a small thread pool.

    notify() never raises: queueing, rendering and transport failures are
    logged and dropped so they cannot turn a committed state change into an error.
    """

    def __init__(
        self,
        *,
        email_sender: EmailSender,
        otp_sender: Callable[..., str] = send_otp_best_effort,
        max_workers: int = 4,
    ) -> None:
        self._email_sender = email_sender
        self._otp_sender = otp_sender
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="notify")

    def notify(self, kind: NotificationKind, recipient: str | None, data: dict) -> None:
        if not recipient:
            logger.warning("Skipping %s notification: recipient has no address", kind.value)
            return
        try:
            self._executor.submit(self._deliver, kind, recipient, dict(data))
        except Exception:
            logger.exception("Could not queue %s notification", kind.value)

    def _deliver(self, kind: NotificationKind, recipient: str, data: dict) -> None:
        try:
            if kind == NotificationKind.OTP_CODE_DELIVERY:
                channel = self._otp_sender(recipient, data["code"])
                logger.info("OTP delivered to %s via %s", mask_phone(recipient), channel)
                return
            subject, html_body = render_email(kind, data)
            self._email_sender.send(recipient, subject, html_body)
        except Exception:
            target = mask_phone(recipient) if kind == NotificationKind.OTP_CODE_DELIVERY else recipient
            logger.exception("Failed to deliver %s notification to %s", kind.value, target)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
