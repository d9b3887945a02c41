"""
Shared fixtures: every test gets its own file-backed SQLite database so that
commits made inside the store are isolated and threads can open their own
connections.
"""
import os
import tempfile
from decimal import Decimal

# Settings are read at import time; point the app at SQLite before anything imports it.
os.environ.setdefault("DATABASE_URL", "sqlite:///" + os.path.join(tempfile.gettempdir(), "rentmyvroom-test.db"))
os.environ.setdefault("OTP_SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret")
os.environ.pop("OTP_TEST_CODE", None)

import pytest
from sqlalchemy.orm import sessionmaker

from app.core.clock import FixedCodeGenerator
from app.core.db import Base, make_engine
from app.core.store import CredentialStore
from app.domains.booking.models import Vehicle
from app.domains.booking.scheduler import BookingScheduler
from app.domains.identity.models import LicenseStatus, RegistrationStep, User, UserRole
from app.domains.kyc import models as _kyc_models  # noqa: F401
from app.domains.otp import models as _otp_models  # noqa: F401
from app.domains.otp.engine import OtpEngine
from app.domains.system_config import models as _system_config_models  # noqa: F401
from app.domains.system_config.policy import StaticPolicySource
from tests.fakes import NOW, FrozenClock, RecordingCodeGenerator, RecordingNotifier


@pytest.fixture()
def db_engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def store(db):
    return CredentialStore(db)


@pytest.fixture()
def clock():
    return FrozenClock(NOW)


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def policy():
    return StaticPolicySource()


@pytest.fixture()
def code_generator():
    return RecordingCodeGenerator()


@pytest.fixture()
def otp_engine(store, clock, policy, notifier, code_generator):
    return OtpEngine(
        store,
        clock=clock,
        policy=policy,
        notifier=notifier,
        code_generator=code_generator,
        default_expiry_minutes=5,
        default_max_attempts=3,
        default_cooldown_seconds=30,
    )


@pytest.fixture()
def scheduler(store, clock, policy, notifier):
    return BookingScheduler(
        store,
        clock=clock,
        policy=policy,
        notifier=notifier,
        default_cancellation_window_hours=4,
    )


@pytest.fixture()
def make_user(db):
    counter = {"n": 0}

    def _make(
        role: UserRole = UserRole.RENTER,
        *,
        license_status: LicenseStatus = LicenseStatus.APPROVED,
        registration_step: RegistrationStep = RegistrationStep.KYC_APPROVED,
        email: str | None = None,
        phone: str | None = None,
    ) -> User:
        counter["n"] += 1
        n = counter["n"]
        user = User(
            phone=phone or f"+9198765{n:05d}",
            role=role,
            phone_verified=True,
            registration_step=registration_step,
            license_status=license_status,
            first_name=f"User{n}",
            last_name="Test",
            email=email or f"user{n}@example.com",
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture()
def make_vehicle(db):
    def _make(merchant: User, *, price_per_day: str = "100", is_available: bool = True, vehicle_id: str | None = None) -> Vehicle:
        vehicle = Vehicle(
            merchant_id=merchant.id,
            make="Maruti",
            model="Swift",
            price_per_day=Decimal(price_per_day),
            is_available=is_available,
            booking_seq=0,
        )
        if vehicle_id is not None:
            vehicle.id = vehicle_id
        db.add(vehicle)
        db.commit()
        db.refresh(vehicle)
        return vehicle

    return _make


@pytest.fixture()
def fixed_code_generator():
    return FixedCodeGenerator("123456")


@pytest.fixture()
def api(session_factory, clock, notifier, fixed_code_generator):
    """TestClient wired to the per-test database, a frozen clock and a recording notifier."""
    from fastapi.testclient import TestClient

    from app.core import deps
    from app.main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[deps.get_db] = _get_db
    app.dependency_overrides[deps.get_clock] = lambda: clock
    app.dependency_overrides[deps.get_notification_sink] = lambda: notifier
    app.dependency_overrides[deps.get_code_generator] = lambda: fixed_code_generator
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth_headers(user: User) -> dict:
    from app.core.security import create_access_token

    token = create_access_token(sub=user.id, phone=user.phone, role=user.role.value)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def headers_for():
    return auth_headers
