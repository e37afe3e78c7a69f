"""Courier offers on open shipments."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import List, Optional

from raven_engine.clients.database import Offer as OfferORM, session_scope, utcnow
from raven_engine.clients.ledger import ledger_scope, load_offer, load_shipment
from raven_engine.clients.notifier import NotificationSender, dispatch
from raven_engine.core.transitions import (
    Aggregate,
    CreateOffer,
    RejectBid,
    TransitionContext,
    create_offer,
    transition,
    unwrap,
)
from raven_engine.errors import UnauthorizedError, WrongStateError
from raven_engine.models.enums import MessageType, NotificationKind, OfferStatus
from raven_engine.models.offer import Offer
from raven_engine.services.conversation_service import append_message, ensure_conversation
from raven_engine.utils.ids import generate_id

LOG = logging.getLogger(__name__)


class OfferService:
    """Records courier bids and explicit declines."""

    def __init__(self, notifier: Optional[NotificationSender] = None) -> None:
        self.notifier = notifier

    def create_offer(
        self,
        shipment_id: str,
        courier_id: str,
        proposed_price: Optional[Decimal] = None,
        message: Optional[str] = None,
    ) -> Offer:
        """Create a PENDING offer and open the courier's conversation with the sender."""
        with ledger_scope() as db:
            shipment = load_shipment(db, shipment_id)
            context = TransitionContext(actor_id=courier_id, shipment_id=shipment.id, sender_id=shipment.sender_id)
            unwrap(create_offer(CreateOffer(shipment.status), context))

            live = (
                db.query(OfferORM)
                .filter(
                    OfferORM.shipment_id == shipment_id,
                    OfferORM.courier_id == courier_id,
                    OfferORM.status.in_([OfferStatus.PENDING, OfferStatus.ACCEPTED]),
                )
                .first()
            )
            if live is not None:
                raise WrongStateError("You have already made an offer on this shipment.")

            offer = OfferORM(
                id=generate_id(),
                shipment_id=shipment_id,
                courier_id=courier_id,
                proposed_price=proposed_price if proposed_price is not None else shipment.price,
                message=message,
                status=OfferStatus.PENDING,
            )
            db.add(offer)
            # Touching the root bumps its version so a concurrent match commit conflicts.
            shipment.updated_at = utcnow()

            conversation = ensure_conversation(db, shipment, courier_id, opened_by=courier_id)
            summary = f"Offer of {offer.proposed_price} {shipment.currency}"
            append_message(
                db,
                conversation,
                courier_id,
                f"{summary}: {message}" if message else summary,
                MessageType.OFFER,
            )
            db.flush()
            model = Offer.model_validate(offer, from_attributes=True)
            sender_id = shipment.sender_id

        LOG.info("Offer %s created on shipment %s by %s", model.id, shipment_id, courier_id)
        dispatch(self.notifier, sender_id, NotificationKind.OFFER_RECEIVED, shipment_id=shipment_id, offer_id=model.id)
        return model

    def decline_offer(self, offer_id: str, actor_id: str) -> Offer:
        """Sender explicitly declines a PENDING offer."""
        with ledger_scope() as db:
            offer = load_offer(db, offer_id)
            if offer.shipment.sender_id != actor_id:
                raise UnauthorizedError("Only the sender can decline offers.")
            outcome = unwrap(transition(Aggregate.OFFER, offer.status, RejectBid("declined")))
            offer.status = outcome.state
            db.flush()
            model = Offer.model_validate(offer, from_attributes=True)

        LOG.info("Offer %s declined by %s", offer_id, actor_id)
        dispatch(self.notifier, model.courier_id, NotificationKind.OFFER_REJECTED, shipment_id=model.shipment_id, offer_id=offer_id)
        return model

    def get_offer(self, offer_id: str) -> Offer:
        with session_scope() as db:
            return Offer.model_validate(load_offer(db, offer_id), from_attributes=True)

    def list_offers(self, shipment_id: str) -> List[Offer]:
        with session_scope() as db:
            load_shipment(db, shipment_id)
            offers = (
                db.query(OfferORM)
                .filter(OfferORM.shipment_id == shipment_id)
                .order_by(OfferORM.created_at.desc())
                .all()
            )
            return [Offer.model_validate(obj, from_attributes=True) for obj in offers]

    def list_for_courier(self, courier_id: str) -> List[Offer]:
        with session_scope() as db:
            offers = (
                db.query(OfferORM)
                .filter(OfferORM.courier_id == courier_id)
                .order_by(OfferORM.created_at.desc())
                .all()
            )
            return [Offer.model_validate(obj, from_attributes=True) for obj in offers]
