from __future__ import annotations

import datetime as dt

import pytest
from fastapi.testclient import TestClient

from relance.delivery import DeliveryError, DeliveryGateway, PermanentDeliveryError
from relance.domain import StopScope, new_reminder
from relance.main import create_app
from relance.services import build_services
from relance.settings import Settings

NOW = dt.datetime(2025, 3, 10, 9, 0, tzinfo=dt.timezone.utc)
TOKEN = "test-token"
CRON_SECRET = "cron-secret"


class FakeClock:
    def __init__(self, now: dt.datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + dt.timedelta(**kwargs)


class ScriptedGateway(DeliveryGateway):
    """Gateway whose outcome per recipient is set by the test."""

    def __init__(self) -> None:
        self.sent = []
        self.transient: set[str] = set()
        self.permanent: set[str] = set()
        self.during_delivery = None

    def deliver(self, reminder, message) -> None:
        if self.during_delivery is not None:
            self.during_delivery(reminder)
        if message.recipient in self.permanent:
            raise PermanentDeliveryError("adresse rejetée")
        if message.recipient in self.transient:
            raise DeliveryError("timeout")
        self.sent.append(message)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(tmp_path) -> Settings:
    return Settings(
        DATA_DIR=str(tmp_path / "data"),
        API_TOKENS={TOKEN: "user-1"},
        CRON_SECRET=CRON_SECRET,
        RELANCE_FREQUENCY_DAYS=2,
        RELANCE_MAX_COUNT=3,
    )


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def services(config, gateway, clock):
    return build_services(config, gateway=gateway, clock=clock)


@pytest.fixture
def client(services) -> TestClient:
    return TestClient(create_app(services))


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def make_reminder(services, clock):
    def factory(case_id="DOS-001", document_type=None, document_id=None, due_in_days=0, **kwargs):
        reminder = new_reminder(
            case_id=case_id,
            relance_type=kwargs.pop("relance_type", "expert"),
            channel=kwargs.pop("channel", "email"),
            recipient=kwargs.pop("recipient", "expert@example.com"),
            due_at=clock() + dt.timedelta(days=due_in_days),
            now=clock(),
            stop_scope=StopScope.build(document_type, document_id),
            **kwargs,
        )
        return services.store.create(reminder)

    return factory
