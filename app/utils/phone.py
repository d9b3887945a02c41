E164_PATTERN = r"^\+[1-9]\d{1,14}$"


def mask_phone(phone: str) -> str:
    """+919876543210 -> +91******3210"""
    if not phone or len(phone) < 8:
        return phone
    return phone[:3] + "*" * (len(phone) - 7) + phone[-4:]
