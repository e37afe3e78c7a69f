"""AcceptMatch: the sender picks a courier's offer and escrow is placed.

The local half (shipment MATCHED, offer ACCEPTED, sibling offers REJECTED,
conversation MATCHED) commits in one transaction guarded by the shipment
version, so of two concurrent accepts exactly one wins. The processor hold
runs after that commit; if it fails the local half is compensated back to
where it was.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from raven_engine import constants
from raven_engine.clients.database import (
    Conversation as ConversationORM,
    Offer as OfferORM,
    SettlementRecord as SettlementORM,
    Shipment as ShipmentORM,
    Transaction as TransactionORM,
    session_scope,
    utcnow,
)
from raven_engine.clients.ledger import (
    expect_version,
    find_conversation,
    held_transaction,
    ledger_scope,
    load_offer,
    load_shipment,
    offers_with_status,
)
from raven_engine.clients.notifier import NotificationSender, dispatch
from raven_engine.core.transitions import (
    AcceptBid,
    AcceptOffer,
    Aggregate,
    Effect,
    RejectBid,
    ShipmentMatched,
    TransitionContext,
    transition,
    unwrap,
)
from raven_engine.errors import EngineError, PaymentHoldFailed, VersionConflictError
from raven_engine.models.enums import (
    ConversationStatus,
    MessageType,
    NotificationKind,
    OfferStatus,
    SettlementOperation,
    SettlementStatus,
    ShipmentStatus,
)
from raven_engine.models.offer import Offer
from raven_engine.models.shipment import Shipment
from raven_engine.models.transaction import MatchResult, Transaction
from raven_engine.services.conversation_service import ConversationGateway, ensure_conversation
from raven_engine.services.escrow_service import EscrowSettlementService

LOG = logging.getLogger(__name__)

TAKEN_MESSAGE = "This shipment was just matched with someone else."
COMPENSATE_ATTEMPTS = 5


@dataclass
class _LocalMatch:
    """What the local commit changed, kept so it can be undone."""

    shipment_id: str
    offer_id: str
    sender_id: str
    courier_id: str
    amount: Decimal
    currency: str
    conversation_id: str
    conversation_status: ConversationStatus
    rejected_offers: Dict[str, str] = field(default_factory=dict)


class MatchingCoordinator:
    """Coordinates the shipment, offers, conversation and escrow for one match."""

    def __init__(
        self,
        escrow: EscrowSettlementService,
        conversations: ConversationGateway,
        notifier: Optional[NotificationSender] = None,
    ) -> None:
        self.escrow = escrow
        self.conversations = conversations
        self.notifier = notifier

    def accept_match(
        self,
        shipment_id: str,
        offer_id: str,
        actor_id: str,
        expected_version: Optional[int] = None,
    ) -> MatchResult:
        replay = self._replay(shipment_id, offer_id, actor_id)
        if replay is not None:
            return replay

        try:
            local = self._commit_local(shipment_id, offer_id, actor_id, expected_version)
        except VersionConflictError as exc:
            # Only a lost commit race carries a database cause; a stale
            # expected_version keeps its own message.
            if exc.__cause__ is None:
                raise
            raise VersionConflictError(exc.detail, user_message=TAKEN_MESSAGE) from exc

        try:
            transaction = self.escrow.hold(
                local.shipment_id,
                local.sender_id,
                local.courier_id,
                local.amount,
                local.currency,
            )
        except EngineError as exc:
            LOG.warning("Hold failed for shipment %s; reverting match: %s", shipment_id, exc.detail)
            self._compensate(local)
            if isinstance(exc, PaymentHoldFailed):
                raise
            raise PaymentHoldFailed(f"hold for shipment {shipment_id} failed: {exc.detail}") from exc

        self.conversations.post_system_message(
            local.conversation_id,
            local.sender_id,
            f"Offer accepted. {transaction.amount} {transaction.currency} is held in escrow.",
            MessageType.MATCH_ACCEPTED,
        )
        LOG.info("Shipment %s matched with courier %s", shipment_id, local.courier_id)
        dispatch(
            self.notifier,
            local.courier_id,
            NotificationKind.MATCH_ACCEPTED,
            shipment_id=shipment_id,
            offer_id=offer_id,
        )
        for courier_id in local.rejected_offers.values():
            dispatch(self.notifier, courier_id, NotificationKind.OFFER_REJECTED, shipment_id=shipment_id)

        with session_scope() as db:
            return MatchResult(
                shipment=Shipment.model_validate(load_shipment(db, shipment_id), from_attributes=True),
                offer=Offer.model_validate(load_offer(db, offer_id), from_attributes=True),
                transaction=transaction,
                conversation_id=local.conversation_id,
                rejected_offer_ids=list(local.rejected_offers),
            )

    def _replay(self, shipment_id: str, offer_id: str, actor_id: str) -> Optional[MatchResult]:
        """A repeated accept of an already-completed match returns the original outcome."""
        with session_scope() as db:
            shipment = load_shipment(db, shipment_id)
            offer = load_offer(db, offer_id)
            if not (
                shipment.status in (ShipmentStatus.MATCHED, ShipmentStatus.IN_TRANSIT)
                and offer.status == OfferStatus.ACCEPTED
                and offer.shipment_id == shipment_id
                and actor_id == shipment.sender_id
            ):
                return None
            held = held_transaction(db, shipment_id)
            if held is None:
                return None
            conversation = find_conversation(db, shipment_id, offer.courier_id)
            LOG.info("Replaying completed match for shipment %s", shipment_id)
            return MatchResult(
                shipment=Shipment.model_validate(shipment, from_attributes=True),
                offer=Offer.model_validate(offer, from_attributes=True),
                transaction=Transaction.model_validate(held, from_attributes=True),
                conversation_id=conversation.id if conversation else None,
                replayed=True,
            )

    def _commit_local(
        self,
        shipment_id: str,
        offer_id: str,
        actor_id: str,
        expected_version: Optional[int],
    ) -> _LocalMatch:
        with ledger_scope() as db:
            shipment = load_shipment(db, shipment_id)
            offer = load_offer(db, offer_id)
            context = TransitionContext(actor_id=actor_id, shipment_id=shipment.id, sender_id=shipment.sender_id)
            user_message = TAKEN_MESSAGE if shipment.status == ShipmentStatus.MATCHED else None
            outcome = unwrap(
                transition(
                    Aggregate.SHIPMENT,
                    shipment.status,
                    AcceptOffer(offer.id, offer.shipment_id, offer.status),
                    context,
                ),
                user_message,
            )
            expect_version(shipment, expected_version)

            shipment.status = outcome.state
            shipment.courier_id = offer.courier_id
            offer.status = unwrap(transition(Aggregate.OFFER, offer.status, AcceptBid())).state

            rejected: Dict[str, str] = {}
            if Effect.REJECT_SIBLING_OFFERS in outcome.effects:
                for sibling in offers_with_status(db, shipment_id, OfferStatus.PENDING, exclude_id=offer.id):
                    sibling.status = unwrap(transition(Aggregate.OFFER, sibling.status, RejectBid("matched"))).state
                    rejected[sibling.id] = sibling.courier_id

            conversation = ensure_conversation(db, shipment, offer.courier_id, opened_by=offer.courier_id)
            prior_status = conversation.status
            if Effect.MATCH_CONVERSATION in outcome.effects:
                conversation.status = unwrap(
                    transition(Aggregate.CONVERSATION, conversation.status, ShipmentMatched())
                ).state
            db.flush()

            return _LocalMatch(
                shipment_id=shipment.id,
                offer_id=offer.id,
                sender_id=shipment.sender_id,
                courier_id=offer.courier_id,
                amount=shipment.price,
                currency=shipment.currency,
                conversation_id=conversation.id,
                conversation_status=prior_status,
                rejected_offers=rejected,
            )

    def _compensate(self, local: _LocalMatch) -> None:
        """Undo the local half of a match whose hold failed."""
        for attempt in range(1, COMPENSATE_ATTEMPTS + 1):
            try:
                self._revert(local)
                return
            except VersionConflictError:
                LOG.info("Compensation for %s conflicted (attempt %d), re-reading", local.shipment_id, attempt)
        LOG.error("Could not revert match of shipment %s; left for reconciliation", local.shipment_id)

    def _revert(self, local: _LocalMatch) -> None:
        with ledger_scope() as db:
            shipment = load_shipment(db, local.shipment_id)
            if held_transaction(db, local.shipment_id) is not None:
                LOG.warning("Shipment %s has a held escrow; not reverting", local.shipment_id)
                return
            if shipment.status != ShipmentStatus.MATCHED or shipment.courier_id != local.courier_id:
                return
            shipment.status = ShipmentStatus.OPEN
            shipment.courier_id = None

            offer = db.get(OfferORM, local.offer_id)
            if offer is not None and offer.status == OfferStatus.ACCEPTED:
                offer.status = OfferStatus.PENDING
            for sibling_id in local.rejected_offers:
                sibling = db.get(OfferORM, sibling_id)
                if sibling is not None and sibling.status == OfferStatus.REJECTED:
                    sibling.status = OfferStatus.PENDING

            conversation = db.get(ConversationORM, local.conversation_id)
            if conversation is not None and conversation.status == ConversationStatus.MATCHED:
                conversation.status = local.conversation_status
        LOG.info("Reverted match of shipment %s to OPEN", local.shipment_id)

    def reconcile_matches(self, stale_after: Optional[timedelta] = None) -> List[str]:
        """Reopen MATCHED shipments whose hold never completed.

        Covers a process that died between the local commit and the hold.
        Returns the ids of the shipments that were reverted.
        """
        if stale_after is None:
            stale_after = timedelta(seconds=constants.RECONCILE_STALE_AFTER_SECONDS)
        cutoff = utcnow() - stale_after
        with session_scope() as db:
            has_transaction = db.query(TransactionORM.id).filter(TransactionORM.shipment_id == ShipmentORM.id).exists()
            candidates = (
                db.query(ShipmentORM)
                .filter(
                    ShipmentORM.status == ShipmentStatus.MATCHED,
                    ShipmentORM.updated_at <= cutoff,
                    ~has_transaction,
                )
                .all()
            )
            stuck = []
            for shipment in candidates:
                record = (
                    db.query(SettlementORM)
                    .filter(
                        SettlementORM.shipment_id == shipment.id,
                        SettlementORM.operation == SettlementOperation.HOLD,
                    )
                    .one_or_none()
                )
                if record is not None and record.status in (SettlementStatus.PENDING, SettlementStatus.CONFIRMED):
                    continue
                accepted = offers_with_status(db, shipment.id, OfferStatus.ACCEPTED)
                conversation = None
                if accepted:
                    conversation = find_conversation(db, shipment.id, accepted[0].courier_id)
                stuck.append(
                    _LocalMatch(
                        shipment_id=shipment.id,
                        offer_id=accepted[0].id if accepted else "",
                        sender_id=shipment.sender_id,
                        courier_id=shipment.courier_id,
                        amount=shipment.price,
                        currency=shipment.currency,
                        conversation_id=conversation.id if conversation else "",
                        conversation_status=ConversationStatus.ACTIVE,
                    )
                )

        reverted = []
        for local in stuck:
            LOG.warning("Shipment %s is MATCHED without escrow; reopening", local.shipment_id)
            self._compensate(local)
            reverted.append(local.shipment_id)
        return reverted
