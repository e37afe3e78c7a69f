from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from raven_engine import constants
from raven_engine.clients.database import init_db
from raven_engine.clients.notifier import LogNotificationSender
from raven_engine.clients.payment_processor import build_processor
from raven_engine.errors import EngineError, PaymentError, Rejection
from raven_engine.models.conversation import (
    Conversation,
    ConversationCreateRequest,
    InboxEntry,
    Message,
    MessageCreateRequest,
)
from raven_engine.models.enums import ShipmentStatus
from raven_engine.models.offer import MatchRequest, Offer, OfferCreateRequest
from raven_engine.models.shipment import (
    Shipment,
    ShipmentCreateRequest,
    ShipmentDetail,
    ShipmentFilter,
    VersionedCommand,
)
from raven_engine.models.transaction import MatchResult, ReconcileReport, Transaction, UserTransaction
from raven_engine.services.conversation_service import ConversationGateway
from raven_engine.services.escrow_service import EscrowSettlementService
from raven_engine.services.matching_service import MatchingCoordinator
from raven_engine.services.offer_service import OfferService
from raven_engine.services.shipment_service import ShipmentService
from raven_engine.utils.logging import setup_logging
from raven_engine.utils.pathing import ensure_runtime_directories
from raven_engine.utils.retry import RetryPolicy

LOG = logging.getLogger(__name__)

app = FastAPI(title="Raven Engine API", version="0.1.0")

HTTP_STATUS = {
    Rejection.NOT_FOUND.value: status.HTTP_404_NOT_FOUND,
    Rejection.UNAUTHORIZED.value: status.HTTP_403_FORBIDDEN,
    Rejection.WRONG_STATE.value: status.HTTP_409_CONFLICT,
    Rejection.VERSION_CONFLICT.value: status.HTTP_409_CONFLICT,
    Rejection.ALREADY_TERMINAL.value: status.HTTP_409_CONFLICT,
}


def http_status_for(error: EngineError) -> int:
    if isinstance(error, PaymentError):
        return status.HTTP_503_SERVICE_UNAVAILABLE if error.retryable else status.HTTP_402_PAYMENT_REQUIRED
    return HTTP_STATUS.get(error.code, status.HTTP_400_BAD_REQUEST)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    level = logging.WARNING if isinstance(exc, PaymentError) else logging.INFO
    LOG.log(level, "%s %s rejected with %s: %s", request.method, request.url.path, exc.code, exc.detail)
    return JSONResponse(
        status_code=http_status_for(exc),
        content={"detail": exc.user_message, "code": exc.code},
    )


def _require_service(name: str):
    service = getattr(app.state, name, None)
    if service is None:
        raise RuntimeError(f"Service '{name}' not initialised.")
    return service


def get_shipment_service() -> ShipmentService:
    return _require_service("shipment_service")


def get_offer_service() -> OfferService:
    return _require_service("offer_service")


def get_matching_coordinator() -> MatchingCoordinator:
    return _require_service("matching_coordinator")


def get_escrow_service() -> EscrowSettlementService:
    return _require_service("escrow_service")


def get_conversation_gateway() -> ConversationGateway:
    return _require_service("conversation_gateway")


def get_actor(x_actor_id: Optional[str] = Header(default=None)) -> str:
    """Authenticated user id, as set by the gateway in front of the engine."""
    if not x_actor_id:
        raise HTTPException(status_code=401, detail=f"{constants.ACTOR_HEADER} header is required.")
    return x_actor_id


@app.on_event("startup")
async def startup_event() -> None:
    setup_logging()
    ensure_runtime_directories()
    init_db()
    notifier = LogNotificationSender()
    conversation_gateway = ConversationGateway(notifier)
    escrow_service = EscrowSettlementService(build_processor(), RetryPolicy(), notifier=notifier)
    matching_coordinator = MatchingCoordinator(escrow_service, conversation_gateway, notifier)

    app.state.notifier = notifier
    app.state.shipment_service = ShipmentService(notifier)
    app.state.offer_service = OfferService(notifier)
    app.state.conversation_gateway = conversation_gateway
    app.state.escrow_service = escrow_service
    app.state.matching_coordinator = matching_coordinator
    app.state.background_tasks = [
        asyncio.create_task(_reconcile_loop(escrow_service, matching_coordinator)),
    ]


async def _reconcile_loop(escrow: EscrowSettlementService, matching: MatchingCoordinator) -> None:
    while True:
        await asyncio.sleep(constants.RECONCILE_INTERVAL_SECONDS)
        try:
            await asyncio.to_thread(escrow.reconcile)
            await asyncio.to_thread(matching.reconcile_matches)
        except Exception:
            LOG.exception("Reconciliation pass failed")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    tasks = getattr(app.state, "background_tasks", [])
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


@app.get("/health")
async def health() -> dict[str, str]:
    """Lightweight health probe."""
    return {"status": "ok"}


# Route handlers are plain ``def`` so FastAPI runs the blocking ledger and
# processor calls in its threadpool.


@app.post("/shipments", response_model=Shipment, status_code=status.HTTP_201_CREATED)
def create_shipment(
    payload: ShipmentCreateRequest,
    actor: str = Depends(get_actor),
    shipments: ShipmentService = Depends(get_shipment_service),
) -> Shipment:
    return shipments.create_shipment(actor, payload)


@app.get("/shipments", response_model=List[Shipment])
def list_shipments(
    status_filter: Optional[ShipmentStatus] = None,
    origin_country: Optional[str] = None,
    destination_country: Optional[str] = None,
    min_price: Optional[Decimal] = None,
    max_price: Optional[Decimal] = None,
    shipments: ShipmentService = Depends(get_shipment_service),
) -> List[Shipment]:
    filters = ShipmentFilter(
        status=status_filter,
        origin_country=origin_country,
        destination_country=destination_country,
        min_price=min_price,
        max_price=max_price,
    )
    return shipments.list_shipments(filters)


@app.get("/shipments/{shipment_id}", response_model=ShipmentDetail)
def get_shipment(
    shipment_id: str,
    shipments: ShipmentService = Depends(get_shipment_service),
) -> ShipmentDetail:
    return shipments.get_shipment(shipment_id)


@app.get("/users/{user_id}/shipments", response_model=List[Shipment])
def list_user_shipments(
    user_id: str,
    role: str = "sender",
    shipments: ShipmentService = Depends(get_shipment_service),
) -> List[Shipment]:
    if role not in ("sender", "courier"):
        raise HTTPException(status_code=400, detail="role must be 'sender' or 'courier'.")
    return shipments.list_for_user(user_id, role)


@app.post("/shipments/{shipment_id}/offers", response_model=Offer, status_code=status.HTTP_201_CREATED)
def create_offer(
    shipment_id: str,
    payload: OfferCreateRequest,
    actor: str = Depends(get_actor),
    offers: OfferService = Depends(get_offer_service),
) -> Offer:
    return offers.create_offer(shipment_id, actor, payload.proposed_price, payload.message)


@app.get("/shipments/{shipment_id}/offers", response_model=List[Offer])
def list_offers(
    shipment_id: str,
    offers: OfferService = Depends(get_offer_service),
) -> List[Offer]:
    return offers.list_offers(shipment_id)


@app.post("/offers/{offer_id}/decline", response_model=Offer)
def decline_offer(
    offer_id: str,
    actor: str = Depends(get_actor),
    offers: OfferService = Depends(get_offer_service),
) -> Offer:
    return offers.decline_offer(offer_id, actor)


@app.get("/users/{user_id}/offers", response_model=List[Offer])
def list_user_offers(
    user_id: str,
    offers: OfferService = Depends(get_offer_service),
) -> List[Offer]:
    return offers.list_for_courier(user_id)


@app.post("/shipments/{shipment_id}/match", response_model=MatchResult)
def accept_match(
    shipment_id: str,
    payload: MatchRequest,
    actor: str = Depends(get_actor),
    matching: MatchingCoordinator = Depends(get_matching_coordinator),
) -> MatchResult:
    return matching.accept_match(shipment_id, payload.offer_id, actor, payload.expected_version)


@app.post("/shipments/{shipment_id}/transit", response_model=Shipment)
def mark_in_transit(
    shipment_id: str,
    payload: Optional[VersionedCommand] = None,
    actor: str = Depends(get_actor),
    shipments: ShipmentService = Depends(get_shipment_service),
) -> Shipment:
    expected = payload.expected_version if payload else None
    return shipments.mark_in_transit(shipment_id, actor, expected)


@app.post("/shipments/{shipment_id}/deliver", response_model=Transaction)
def confirm_delivery(
    shipment_id: str,
    actor: str = Depends(get_actor),
    escrow: EscrowSettlementService = Depends(get_escrow_service),
) -> Transaction:
    return escrow.release(shipment_id, actor)


@app.post("/shipments/{shipment_id}/cancel", response_model=Transaction)
def cancel_shipment(
    shipment_id: str,
    actor: str = Depends(get_actor),
    escrow: EscrowSettlementService = Depends(get_escrow_service),
) -> Transaction:
    return escrow.refund(shipment_id, actor)


@app.post("/shipments/{shipment_id}/withdraw", response_model=Shipment)
def withdraw_shipment(
    shipment_id: str,
    payload: Optional[VersionedCommand] = None,
    actor: str = Depends(get_actor),
    shipments: ShipmentService = Depends(get_shipment_service),
) -> Shipment:
    expected = payload.expected_version if payload else None
    return shipments.withdraw(shipment_id, actor, expected)


@app.get("/shipments/{shipment_id}/transaction", response_model=Transaction)
def get_transaction(
    shipment_id: str,
    escrow: EscrowSettlementService = Depends(get_escrow_service),
) -> Transaction:
    return escrow.get_transaction(shipment_id)


@app.get("/users/{user_id}/transactions", response_model=List[UserTransaction])
def list_user_transactions(
    user_id: str,
    escrow: EscrowSettlementService = Depends(get_escrow_service),
) -> List[UserTransaction]:
    return escrow.list_user_transactions(user_id)


@app.post("/conversations", response_model=Conversation, status_code=status.HTTP_201_CREATED)
def open_conversation(
    payload: ConversationCreateRequest,
    actor: str = Depends(get_actor),
    conversations: ConversationGateway = Depends(get_conversation_gateway),
) -> Conversation:
    return conversations.get_or_create(
        payload.shipment_id,
        actor,
        recipient_id=payload.recipient_id,
        initial_message=payload.initial_message,
    )


@app.get("/users/{user_id}/conversations", response_model=List[InboxEntry])
def list_conversations(
    user_id: str,
    conversations: ConversationGateway = Depends(get_conversation_gateway),
) -> List[InboxEntry]:
    return conversations.list_conversations(user_id)


@app.get("/users/{user_id}/unread")
def unread_total(
    user_id: str,
    conversations: ConversationGateway = Depends(get_conversation_gateway),
) -> dict[str, int]:
    return {"unread": conversations.unread_total(user_id)}


@app.get("/conversations/{conversation_id}/messages", response_model=List[Message])
def list_messages(
    conversation_id: str,
    actor: str = Depends(get_actor),
    conversations: ConversationGateway = Depends(get_conversation_gateway),
) -> List[Message]:
    return conversations.list_messages(conversation_id, actor)


@app.post(
    "/conversations/{conversation_id}/messages",
    response_model=Message,
    status_code=status.HTTP_201_CREATED,
)
def send_message(
    conversation_id: str,
    payload: MessageCreateRequest,
    actor: str = Depends(get_actor),
    conversations: ConversationGateway = Depends(get_conversation_gateway),
) -> Message:
    return conversations.send_message(conversation_id, actor, payload.content, payload.type)


@app.post("/conversations/{conversation_id}/delivered")
def mark_delivered(
    conversation_id: str,
    actor: str = Depends(get_actor),
    conversations: ConversationGateway = Depends(get_conversation_gateway),
) -> dict[str, int]:
    return {"delivered": conversations.mark_delivered(conversation_id, actor)}


@app.post("/conversations/{conversation_id}/read", response_model=Conversation)
def mark_read(
    conversation_id: str,
    actor: str = Depends(get_actor),
    conversations: ConversationGateway = Depends(get_conversation_gateway),
) -> Conversation:
    return conversations.mark_read(conversation_id, actor)


@app.post("/admin/reconcile", response_model=ReconcileReport)
def reconcile(
    stale_after_seconds: int = constants.RECONCILE_STALE_AFTER_SECONDS,
    actor: str = Depends(get_actor),
    escrow: EscrowSettlementService = Depends(get_escrow_service),
    matching: MatchingCoordinator = Depends(get_matching_coordinator),
) -> ReconcileReport:
    if actor not in escrow.admin_ids:
        raise HTTPException(status_code=403, detail="Reconciliation is restricted to administrators.")
    stale_after = timedelta(seconds=stale_after_seconds)
    return ReconcileReport(
        settlements=escrow.reconcile(stale_after),
        reverted_shipment_ids=matching.reconcile_matches(stale_after),
    )
