import hashlib
import secrets
import time
from dataclasses import dataclass
from typing import Literal

import jwt

from app.core.config import settings


Role = Literal["RENTER", "MERCHANT", "ADMIN"]
ROLES = ("RENTER", "MERCHANT", "ADMIN")


def _now_s() -> int:
    return int(time.time())


def hash_otp(phone: str, otp: str) -> str:
    raw = f"{settings.jwt_secret}:{phone}:{otp}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def verify_otp_hash(phone: str, otp: str, expected_hash: str) -> bool:
    return secrets.compare_digest(hash_otp(phone, otp), expected_hash)


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _claims(*, sub: str, phone: str, role: Role, ttl_seconds: int, extra: dict | None) -> dict:
    now = _now_s()
    payload = {
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": now,
        "exp": now + ttl_seconds,
        "sub": sub,
        "phone": phone,
        "role": role,
    }
    if extra:
        payload.update(extra)
    return payload


def create_access_token(*, sub: str, phone: str, role: Role, extra: dict | None = None) -> str:
    payload = _claims(sub=sub, phone=phone, role=role, ttl_seconds=settings.access_token_ttl_seconds, extra=extra)
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def create_refresh_token(*, sub: str, phone: str, role: Role) -> str:
    # jti keeps two refresh tokens minted within the same second distinct.
    payload = _claims(
        sub=sub,
        phone=phone,
        role=role,
        ttl_seconds=settings.refresh_token_ttl_days * 24 * 60 * 60,
        extra={"jti": secrets.token_hex(16), "typ": "refresh"},
    )
    return jwt.encode(payload, settings.jwt_refresh_secret, algorithm="HS256")


@dataclass(frozen=True)
class Principal:
    sub: str
    role: Role
    phone: str | None = None


def _to_principal(payload: dict) -> Principal:
    role = payload.get("role")
    if role not in ROLES:
        raise jwt.InvalidTokenError("Unknown role")
    phone = payload.get("phone")
    return Principal(sub=str(payload["sub"]), role=role, phone=str(phone) if phone is not None else None)


def decode_bearer_token(token: str) -> Principal:
    payload = jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        audience=settings.jwt_audience,
        issuer=settings.jwt_issuer,
    )
    return _to_principal(payload)


def decode_refresh_token(token: str) -> Principal:
    payload = jwt.decode(
        token,
        settings.jwt_refresh_secret,
        algorithms=["HS256"],
        audience=settings.jwt_audience,
        issuer=settings.jwt_issuer,
    )
    if payload.get("typ") != "refresh":
        raise jwt.InvalidTokenError("Not a refresh token")
    return _to_principal(payload)
