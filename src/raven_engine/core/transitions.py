"""Pure transition functions for the engine aggregates.

Every function here is deterministic and free of I/O: given the current
status of an aggregate, an event and the facts the caller loaded
(``TransitionContext``), it returns either ``Accepted`` with the next status
and the side effects the caller must perform, or ``Rejected`` with a typed
reason. Nothing in this module raises for an illegal transition.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional, Tuple, Union

from raven_engine.errors import Rejection, error_for
from raven_engine.models.enums import (
    MESSAGE_STATUS_RANK,
    TERMINAL_SHIPMENT_STATUSES,
    TERMINAL_TRANSACTION_STATUSES,
    ConversationStatus,
    MessageStatus,
    OfferStatus,
    ShipmentStatus,
    TransactionStatus,
)


class Aggregate(str, Enum):
    SHIPMENT = "SHIPMENT"
    OFFER = "OFFER"
    CONVERSATION = "CONVERSATION"
    MESSAGE = "MESSAGE"
    TRANSACTION = "TRANSACTION"


class Effect(str, Enum):
    """Side effects a transition asks its caller to perform after commit."""

    HOLD_PAYMENT = "HOLD_PAYMENT"
    RELEASE_PAYMENT = "RELEASE_PAYMENT"
    REFUND_PAYMENT = "REFUND_PAYMENT"
    REJECT_SIBLING_OFFERS = "REJECT_SIBLING_OFFERS"
    MATCH_CONVERSATION = "MATCH_CONVERSATION"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AcceptOffer:
    offer_id: str
    offer_shipment_id: str
    offer_status: OfferStatus


@dataclass(frozen=True)
class MarkInTransit:
    pass


@dataclass(frozen=True)
class ConfirmDelivery:
    pass


@dataclass(frozen=True)
class Cancel:
    pass


@dataclass(frozen=True)
class CreateOffer:
    shipment_status: ShipmentStatus


@dataclass(frozen=True)
class AcceptBid:
    pass


@dataclass(frozen=True)
class RejectBid:
    reason: str = "declined"


@dataclass(frozen=True)
class Reply:
    """A TEXT message posted by a conversation participant."""

    by_opener: bool


@dataclass(frozen=True)
class ShipmentMatched:
    pass


@dataclass(frozen=True)
class DeliverMessage:
    pass


@dataclass(frozen=True)
class ReadMessage:
    pass


@dataclass(frozen=True)
class Release:
    pass


@dataclass(frozen=True)
class Refund:
    pass


@dataclass(frozen=True)
class TransitionContext:
    """Facts loaded by the caller that gate a transition."""

    actor_id: Optional[str] = None
    shipment_id: Optional[str] = None
    sender_id: Optional[str] = None
    courier_id: Optional[str] = None
    transaction_status: Optional[TransactionStatus] = None
    is_admin: bool = False


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Accepted:
    state: Enum
    effects: Tuple[Effect, ...] = ()

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Rejected:
    reason: Rejection
    detail: str

    @property
    def ok(self) -> bool:
        return False


Result = Union[Accepted, Rejected]


def unwrap(result: Result, user_message: Optional[str] = None) -> Accepted:
    """Return an accepted transition or raise the error matching its rejection."""
    if isinstance(result, Rejected):
        raise error_for(result.reason, result.detail, user_message)
    return result


def check_version(expected: Optional[int], actual: int) -> Optional[Rejected]:
    """Compare a caller-supplied version against the stored one."""
    if expected is None or expected == actual:
        return None
    return Rejected(
        Rejection.VERSION_CONFLICT, f"expected version {expected}, found {actual}"
    )


def _wrong(state: Enum, event: object) -> Rejected:
    return Rejected(
        Rejection.WRONG_STATE, f"{type(event).__name__} is not allowed from {state.value}"
    )


# ---------------------------------------------------------------------------
# Shipment
# ---------------------------------------------------------------------------

SHIPMENT_TRANSITIONS: Dict[type, FrozenSet[ShipmentStatus]] = {
    AcceptOffer: frozenset({ShipmentStatus.OPEN}),
    MarkInTransit: frozenset({ShipmentStatus.MATCHED}),
    ConfirmDelivery: frozenset({ShipmentStatus.MATCHED, ShipmentStatus.IN_TRANSIT}),
    Cancel: frozenset({ShipmentStatus.OPEN, ShipmentStatus.MATCHED, ShipmentStatus.IN_TRANSIT}),
}


def transition_shipment(state: ShipmentStatus, event: object, ctx: TransitionContext) -> Result:
    if state in TERMINAL_SHIPMENT_STATUSES:
        return Rejected(Rejection.ALREADY_TERMINAL, f"shipment is already {state.value}")
    allowed = SHIPMENT_TRANSITIONS.get(type(event))
    if allowed is None:
        return _wrong(state, event)

    if isinstance(event, AcceptOffer):
        if ctx.actor_id != ctx.sender_id:
            return Rejected(Rejection.UNAUTHORIZED, "only the sender can accept an offer")
        if state not in allowed:
            return _wrong(state, event)
        if event.offer_shipment_id != ctx.shipment_id:
            return Rejected(Rejection.WRONG_STATE, "offer belongs to another shipment")
        if event.offer_status != OfferStatus.PENDING:
            return Rejected(Rejection.WRONG_STATE, f"offer is {event.offer_status.value}")
        return Accepted(
            ShipmentStatus.MATCHED,
            (Effect.REJECT_SIBLING_OFFERS, Effect.MATCH_CONVERSATION, Effect.HOLD_PAYMENT),
        )

    if isinstance(event, MarkInTransit):
        if ctx.courier_id is None or ctx.actor_id != ctx.courier_id:
            return Rejected(Rejection.UNAUTHORIZED, "only the matched courier can start transit")
        if state not in allowed:
            return _wrong(state, event)
        if ctx.transaction_status != TransactionStatus.HELD:
            return Rejected(Rejection.WRONG_STATE, "escrow is not held for this shipment")
        return Accepted(ShipmentStatus.IN_TRANSIT)

    if isinstance(event, ConfirmDelivery):
        if ctx.actor_id != ctx.sender_id:
            return Rejected(Rejection.UNAUTHORIZED, "only the sender can confirm delivery")
        if state not in allowed:
            return _wrong(state, event)
        if ctx.transaction_status in TERMINAL_TRANSACTION_STATUSES:
            return Rejected(Rejection.ALREADY_TERMINAL, "escrow is already settled")
        if ctx.transaction_status != TransactionStatus.HELD:
            return Rejected(Rejection.WRONG_STATE, "escrow is not held for this shipment")
        return Accepted(ShipmentStatus.DELIVERED, (Effect.RELEASE_PAYMENT,))

    # Cancel
    if ctx.actor_id != ctx.sender_id and not ctx.is_admin:
        return Rejected(Rejection.UNAUTHORIZED, "only the sender can cancel this shipment")
    if state not in allowed:
        return _wrong(state, event)
    if ctx.transaction_status == TransactionStatus.HELD:
        return Accepted(ShipmentStatus.CANCELLED, (Effect.REFUND_PAYMENT,))
    if state != ShipmentStatus.OPEN:
        return Rejected(Rejection.WRONG_STATE, "matched shipment has no held escrow to refund")
    return Accepted(ShipmentStatus.CANCELLED)


# ---------------------------------------------------------------------------
# Offer
# ---------------------------------------------------------------------------


def create_offer(event: CreateOffer, ctx: TransitionContext) -> Result:
    """Creation has no prior state; it is gated on the shipment only."""
    if event.shipment_status in TERMINAL_SHIPMENT_STATUSES:
        return Rejected(Rejection.ALREADY_TERMINAL, f"shipment is already {event.shipment_status.value}")
    if event.shipment_status != ShipmentStatus.OPEN:
        return Rejected(Rejection.WRONG_STATE, "offers can only be made on open shipments")
    if ctx.actor_id is not None and ctx.actor_id == ctx.sender_id:
        return Rejected(Rejection.UNAUTHORIZED, "cannot make an offer on your own shipment")
    return Accepted(OfferStatus.PENDING)


def transition_offer(state: OfferStatus, event: object, ctx: TransitionContext) -> Result:
    if state != OfferStatus.PENDING:
        return Rejected(Rejection.ALREADY_TERMINAL, f"offer is already {state.value}")
    if isinstance(event, AcceptBid):
        return Accepted(OfferStatus.ACCEPTED)
    if isinstance(event, RejectBid):
        return Accepted(OfferStatus.REJECTED)
    return _wrong(state, event)


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


def transition_conversation(state: ConversationStatus, event: object, ctx: TransitionContext) -> Result:
    if isinstance(event, ShipmentMatched):
        return Accepted(ConversationStatus.MATCHED)
    if isinstance(event, Reply):
        if state == ConversationStatus.PENDING and not event.by_opener:
            return Accepted(ConversationStatus.ACTIVE)
        return Accepted(state)
    return _wrong(state, event)


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------


def transition_message(state: MessageStatus, event: object, ctx: TransitionContext) -> Result:
    if state == MessageStatus.READ:
        return Rejected(Rejection.ALREADY_TERMINAL, "message is already read")
    if isinstance(event, ReadMessage):
        return Accepted(MessageStatus.READ)
    if isinstance(event, DeliverMessage):
        if MESSAGE_STATUS_RANK[state] >= MESSAGE_STATUS_RANK[MessageStatus.DELIVERED]:
            return _wrong(state, event)
        return Accepted(MessageStatus.DELIVERED)
    return _wrong(state, event)


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------


def transition_transaction(state: TransactionStatus, event: object, ctx: TransitionContext) -> Result:
    if state in TERMINAL_TRANSACTION_STATUSES:
        return Rejected(Rejection.ALREADY_TERMINAL, f"transaction is already {state.value}")
    if isinstance(event, Release):
        return Accepted(TransactionStatus.RELEASED)
    if isinstance(event, Refund):
        return Accepted(TransactionStatus.REFUNDED)
    return _wrong(state, event)


_DISPATCH: Dict[Aggregate, Callable[[Enum, object, TransitionContext], Result]] = {
    Aggregate.SHIPMENT: transition_shipment,
    Aggregate.OFFER: transition_offer,
    Aggregate.CONVERSATION: transition_conversation,
    Aggregate.MESSAGE: transition_message,
    Aggregate.TRANSACTION: transition_transaction,
}


def transition(
    aggregate: Aggregate,
    state: Enum,
    event: object,
    context: Optional[TransitionContext] = None,
) -> Result:
    """Compute the next status of ``aggregate`` for ``event``."""
    return _DISPATCH[aggregate](state, event, context or TransitionContext())
