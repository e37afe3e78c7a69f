from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Tuple

import pytest
from fastapi.testclient import TestClient

from raven_engine import constants
from raven_engine.api import main as api_main
from raven_engine.clients import database
from raven_engine.clients.notifier import NotificationSender
from raven_engine.clients.payment_processor import FakePaymentProcessor
from raven_engine.models.enums import NotificationKind
from raven_engine.models.shipment import ShipmentCreateRequest
from raven_engine.services.conversation_service import ConversationGateway
from raven_engine.services.escrow_service import EscrowSettlementService
from raven_engine.services.matching_service import MatchingCoordinator
from raven_engine.services.offer_service import OfferService
from raven_engine.services.shipment_service import ShipmentService
from raven_engine.utils.retry import RetryPolicy

SENDER = "alice"
COURIER = "bob"
OTHER_COURIER = "carol"
ADMIN = "ops"


class RecordingNotifier(NotificationSender):
    """Keeps every notification instead of delivering it."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, NotificationKind, Dict[str, Any]]] = []

    def notify(self, user_id: str, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        self.sent.append((user_id, kind, payload))

    def kinds_for(self, user_id: str) -> List[NotificationKind]:
        return [kind for recipient, kind, _ in self.sent if recipient == user_id]


@pytest.fixture(autouse=True)
def temp_runtime_dirs(tmp_path, monkeypatch):
    """Redirect runtime directories and database into a temp location."""
    base = tmp_path / "runtime"
    home = base / "home"
    mapping = {
        "HOME_DIR": home,
        "LOG_DIR": home / "logs",
        "DB_DIR": home / "db",
        "DB_FILE": home / "db" / "raven.db",
    }

    for name, path in mapping.items():
        monkeypatch.setattr(constants, name, path)
    monkeypatch.setattr(constants, "DATABASE_URL", None)

    database.init_db()
    yield


@pytest.fixture
def processor() -> FakePaymentProcessor:
    return FakePaymentProcessor()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, delay_seconds=0, sleep=lambda _: None)


@pytest.fixture
def shipment_service(notifier) -> ShipmentService:
    return ShipmentService(notifier)


@pytest.fixture
def offer_service(notifier) -> OfferService:
    return OfferService(notifier)


@pytest.fixture
def conversation_gateway(notifier) -> ConversationGateway:
    return ConversationGateway(notifier)


@pytest.fixture
def escrow_service(processor, retry_policy, notifier) -> EscrowSettlementService:
    return EscrowSettlementService(processor, retry_policy, notifier=notifier, admin_ids={ADMIN})


@pytest.fixture
def matching(escrow_service, conversation_gateway, notifier) -> MatchingCoordinator:
    return MatchingCoordinator(escrow_service, conversation_gateway, notifier)


def shipment_request(price: str = "100.00", **overrides: Any) -> ShipmentCreateRequest:
    start = datetime(2026, 11, 1, 9, 0, tzinfo=timezone.utc)
    fields: Dict[str, Any] = {
        "origin_country": "France",
        "origin_city": "Paris",
        "destination_country": "Spain",
        "destination_city": "Madrid",
        "content": "Two books and a scarf",
        "weight": 1.5,
        "window_start": start,
        "window_end": start + timedelta(days=5),
        "price": Decimal(price),
    }
    fields.update(overrides)
    return ShipmentCreateRequest(**fields)


@pytest.fixture
def open_shipment(shipment_service):
    """An OPEN shipment posted by the default sender."""
    return shipment_service.create_shipment(SENDER, shipment_request())


@pytest.fixture
def offer(offer_service, open_shipment):
    return offer_service.create_offer(open_shipment.id, COURIER, message="Happy to carry this for you.")


@pytest.fixture
def matched(matching, open_shipment, offer):
    """A shipment matched with the default courier and escrow HELD."""
    return matching.accept_match(open_shipment.id, offer.id, SENDER)


@pytest.fixture
def api_client(
    shipment_service,
    offer_service,
    conversation_gateway,
    escrow_service,
    matching,
):
    app = api_main.app

    overrides = {
        api_main.get_shipment_service: lambda: shipment_service,
        api_main.get_offer_service: lambda: offer_service,
        api_main.get_conversation_gateway: lambda: conversation_gateway,
        api_main.get_escrow_service: lambda: escrow_service,
        api_main.get_matching_coordinator: lambda: matching,
    }

    original_overrides = app.dependency_overrides.copy()
    original_lifespan = app.router.lifespan_context

    @asynccontextmanager
    async def noop_lifespan(_app):
        yield

    app.router.lifespan_context = noop_lifespan
    app.dependency_overrides.update(overrides)

    with TestClient(app) as client:
        yield client

    app.dependency_overrides = original_overrides
    app.router.lifespan_context = original_lifespan
