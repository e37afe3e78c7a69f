"""Shipment lifecycle operations outside matching and settlement."""

from __future__ import annotations

import logging
from typing import List, Optional

from raven_engine.clients.database import Shipment as ShipmentORM, session_scope
from raven_engine.clients.ledger import (
    expect_version,
    held_transaction,
    ledger_scope,
    load_shipment,
    offers_with_status,
)
from raven_engine.clients.notifier import NotificationSender, dispatch
from raven_engine.core.transitions import (
    Aggregate,
    Cancel,
    MarkInTransit,
    RejectBid,
    TransitionContext,
    transition,
    unwrap,
)
from raven_engine.errors import WrongStateError
from raven_engine.models.enums import NotificationKind, OfferStatus, ShipmentStatus
from raven_engine.models.shipment import Shipment, ShipmentCreateRequest, ShipmentDetail, ShipmentFilter
from raven_engine.utils.ids import generate_id

LOG = logging.getLogger(__name__)


class ShipmentService:
    """Creates, lists and advances shipments."""

    def __init__(self, notifier: Optional[NotificationSender] = None) -> None:
        self.notifier = notifier

    def create_shipment(self, sender_id: str, request: ShipmentCreateRequest) -> Shipment:
        shipment = ShipmentORM(
            id=generate_id(),
            sender_id=sender_id,
            status=ShipmentStatus.OPEN,
            **request.model_dump(),
        )
        shipment.currency = shipment.currency.upper()
        with ledger_scope() as db:
            db.add(shipment)
            db.flush()
            model = Shipment.model_validate(shipment, from_attributes=True)
        LOG.info("Shipment %s created by %s", model.id, sender_id)
        return model

    def get_shipment(self, shipment_id: str) -> ShipmentDetail:
        with session_scope() as db:
            shipment = load_shipment(db, shipment_id)
            return ShipmentDetail.model_validate(shipment, from_attributes=True)

    def list_shipments(self, filters: Optional[ShipmentFilter] = None) -> List[Shipment]:
        filters = filters or ShipmentFilter()
        with session_scope() as db:
            query = db.query(ShipmentORM)
            if filters.status:
                query = query.filter(ShipmentORM.status == filters.status)
            if filters.origin_country:
                query = query.filter(ShipmentORM.origin_country.ilike(f"%{filters.origin_country}%"))
            if filters.destination_country:
                query = query.filter(ShipmentORM.destination_country.ilike(f"%{filters.destination_country}%"))
            if filters.min_price is not None:
                query = query.filter(ShipmentORM.price >= filters.min_price)
            if filters.max_price is not None:
                query = query.filter(ShipmentORM.price <= filters.max_price)
            shipments = query.order_by(ShipmentORM.created_at.desc()).all()
            return [Shipment.model_validate(obj, from_attributes=True) for obj in shipments]

    def list_for_user(self, user_id: str, role: str = "sender") -> List[Shipment]:
        column = ShipmentORM.sender_id if role == "sender" else ShipmentORM.courier_id
        with session_scope() as db:
            shipments = (
                db.query(ShipmentORM)
                .filter(column == user_id)
                .order_by(ShipmentORM.created_at.desc())
                .all()
            )
            return [Shipment.model_validate(obj, from_attributes=True) for obj in shipments]

    def mark_in_transit(self, shipment_id: str, actor_id: str, expected_version: Optional[int] = None) -> Shipment:
        with ledger_scope() as db:
            shipment = load_shipment(db, shipment_id)
            if shipment.status == ShipmentStatus.IN_TRANSIT and actor_id == shipment.courier_id:
                return Shipment.model_validate(shipment, from_attributes=True)
            expect_version(shipment, expected_version)
            held = held_transaction(db, shipment_id)
            context = TransitionContext(
                actor_id=actor_id,
                shipment_id=shipment.id,
                sender_id=shipment.sender_id,
                courier_id=shipment.courier_id,
                transaction_status=held.status if held else None,
            )
            outcome = unwrap(transition(Aggregate.SHIPMENT, shipment.status, MarkInTransit(), context))
            shipment.status = outcome.state
            db.flush()
            model = Shipment.model_validate(shipment, from_attributes=True)

        LOG.info("Shipment %s is in transit with courier %s", shipment_id, actor_id)
        dispatch(self.notifier, model.sender_id, NotificationKind.IN_TRANSIT, shipment_id=shipment_id)
        return model

    def withdraw(self, shipment_id: str, actor_id: str, expected_version: Optional[int] = None) -> Shipment:
        """Cancel a shipment that was never matched; no payment is involved."""
        with ledger_scope() as db:
            shipment = load_shipment(db, shipment_id)
            expect_version(shipment, expected_version)
            if shipment.status in (ShipmentStatus.MATCHED, ShipmentStatus.IN_TRANSIT):
                raise WrongStateError(
                    f"Shipment {shipment_id} is {shipment.status.value}; cancel it with a refund instead."
                )
            context = TransitionContext(actor_id=actor_id, shipment_id=shipment.id, sender_id=shipment.sender_id)
            outcome = unwrap(transition(Aggregate.SHIPMENT, shipment.status, Cancel(), context))
            shipment.status = outcome.state

            rejected = []
            for offer in offers_with_status(db, shipment_id, OfferStatus.PENDING):
                offer.status = unwrap(transition(Aggregate.OFFER, offer.status, RejectBid("withdrawn"))).state
                rejected.append(offer.courier_id)
            db.flush()
            model = Shipment.model_validate(shipment, from_attributes=True)

        LOG.info("Shipment %s withdrawn by %s (%d offers rejected)", shipment_id, actor_id, len(rejected))
        for courier_id in rejected:
            dispatch(self.notifier, courier_id, NotificationKind.OFFER_REJECTED, shipment_id=shipment_id)
        return model
