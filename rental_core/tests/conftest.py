import os
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# FORCE model registration
import rental_core.models  # noqa

from rental_core.core.clock import FrozenClock
from rental_core.core.config import Settings
from rental_core.db.base import Base
from rental_core.integrations import Integrations
from rental_core.integrations.mediators import StaticMediatorDirectory
from rental_core.models.enums import PrincipalRole
from rental_core.policies.rbac import Principal
from rental_core.services.contract_coordinator import ContractCoordinator
from rental_core.services.sweep_service import SweepService
from rental_core.tests.flows import LANDLORD_ID, MEDIATOR_IDS, TENANT_ID
from rental_core.tests.fakes import (
    FakeDocumentGenerator,
    FakePaymentGateway,
    RecordingNotifications,
    RecordingOtpSender,
)

START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def engine():
    url = os.getenv("TEST_DATABASE_URL")
    if url:
        eng = create_engine(url, future=True)
    else:
        eng = create_engine(
            "sqlite+pysqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )
    Base.metadata.create_all(eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(eng)
        eng.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture(scope="function")
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def settings(tmp_path):
    return Settings(_env_file=None, environment="test", document_dir=str(tmp_path / "documents"))


@pytest.fixture
def payments():
    return FakePaymentGateway()


@pytest.fixture
def documents():
    return FakeDocumentGenerator()


@pytest.fixture
def notifications():
    return RecordingNotifications()


@pytest.fixture
def otp_sender():
    return RecordingOtpSender()


@pytest.fixture
def integrations(clock, payments, documents, notifications, otp_sender):
    return Integrations(
        payments=payments,
        documents=documents,
        notifications=notifications,
        otp_sender=otp_sender,
        mediators=StaticMediatorDirectory(MEDIATOR_IDS),
        clock=clock,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def coordinator(settings, integrations):
    return ContractCoordinator(settings, integrations)


@pytest.fixture
def sweeps(coordinator):
    return SweepService(coordinator)


def _principal(user_id: str, role: PrincipalRole) -> Principal:
    return Principal(user_id=user_id, role=role, display_name=user_id)


@pytest.fixture
def landlord():
    return _principal(LANDLORD_ID, PrincipalRole.USER)


@pytest.fixture
def tenant():
    return _principal(TENANT_ID, PrincipalRole.USER)


@pytest.fixture
def stranger():
    return _principal("someone-else", PrincipalRole.USER)


@pytest.fixture
def mediator():
    return _principal(MEDIATOR_IDS[0], PrincipalRole.MEDIATOR)


@pytest.fixture
def admin():
    return _principal("admin-1", PrincipalRole.ADMIN)
