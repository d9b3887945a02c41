import logging

import requests

from app.core.config import settings

logger = logging.getLogger(__name__)

MSG91_OTP_URL = "https://api.msg91.com/api/v5/otp"
MSG91_FLOW_URL = "https://api.msg91.com/api/v5/flow/"


class DeliveryError(RuntimeError):
    pass


def msg91_missing_fields() -> list[str]:
    missing: list[str] = []
    if not settings.msg91_api_key:
        missing.append("MSG91_API_KEY")
    if not settings.msg91_sender_id:
        missing.append("MSG91_SENDER_ID")
    return missing


def msg91_channels_available() -> dict:
    base_ready = not msg91_missing_fields()
    # SMS is "usable" only when template_id is present (DLT reality).
    return {
        "whatsapp": base_ready and bool(settings.msg91_whatsapp_flow_id),
        "sms": base_ready and bool(settings.msg91_otp_template_id),
    }


def _digits(phone: str) -> str:
    # MSG91 expects digits only; accept "+91..." input.
    return "".join(ch for ch in (phone or "").strip() if ch.isdigit())


def _channel_order() -> list[str]:
    parts = [p.strip().lower() for p in (settings.msg91_otp_channel_order or "").split(",") if p.strip()]
    out: list[str] = []
    for p in parts:
        if p in ("whatsapp", "sms") and p not in out:
            out.append(p)
    return out or ["whatsapp", "sms"]


def _post(url: str, payload: dict, *, channel: str, timeout: float) -> bool:
    headers = {
        "accept": "application/json",
        "content-type": "application/json",
        "authkey": settings.msg91_api_key or "",
    }
    try:
        resp = requests.post(url, json=payload, headers=headers, timeout=timeout)
    except requests.RequestException as e:
        logger.warning("MSG91 %s send exception: %s", channel, e)
        return False
    if resp.status_code // 100 == 2:
        return True
    logger.warning("MSG91 %s send failed: status=%s body=%s", channel, resp.status_code, resp.text[:300])
    return False


def send_otp_whatsapp(phone: str, otp: str, *, timeout: float) -> bool:
    mobile = _digits(phone)
    if not mobile:
        logger.warning("MSG91 WhatsApp send skipped: invalid phone=%r", phone)
        return False
    var_key = (settings.msg91_whatsapp_otp_var or "OTP").strip() or "OTP"
    payload = {"flow_id": settings.msg91_whatsapp_flow_id, "mobiles": mobile, var_key: otp}
    return _post(MSG91_FLOW_URL, payload, channel="whatsapp", timeout=timeout)


def send_otp_sms(phone: str, otp: str, *, timeout: float) -> bool:
    mobile = _digits(phone)
    if not mobile:
        logger.warning("MSG91 SMS send skipped: invalid phone=%r", phone)
        return False
    payload = {
        "mobile": mobile,
        "otp": otp,
        "sender": settings.msg91_sender_id,
        "template_id": settings.msg91_otp_template_id,
    }
    return _post(MSG91_OTP_URL, payload, channel="sms", timeout=timeout)


_SENDERS = {"whatsapp": send_otp_whatsapp, "sms": send_otp_sms}


def send_otp_best_effort(phone: str, otp: str, *, timeout: float | None = None) -> str:
    """
    Try configured channels in order (WhatsApp first by default).

    Returns the channel that accepted the message; raises DeliveryError when
    none did. Callers on the request path must not see this error.
    """
    timeout = timeout if timeout is not None else settings.notification_timeout_seconds
    available = msg91_channels_available()
    order = _channel_order()
    for channel in order:
        if available.get(channel) and _SENDERS[channel](phone, otp, timeout=timeout):
            return channel
    raise DeliveryError(f"OTP not delivered; available={available} order={order}")
