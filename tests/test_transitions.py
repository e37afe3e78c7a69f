import pytest

from raven_engine.core.transitions import (
    AcceptBid,
    AcceptOffer,
    Accepted,
    Aggregate,
    Cancel,
    ConfirmDelivery,
    CreateOffer,
    DeliverMessage,
    Effect,
    MarkInTransit,
    ReadMessage,
    Refund,
    RejectBid,
    Rejected,
    Release,
    Reply,
    ShipmentMatched,
    TransitionContext,
    check_version,
    create_offer,
    transition,
    unwrap,
)
from raven_engine.errors import (
    AlreadyTerminalError,
    Rejection,
    UnauthorizedError,
    VersionConflictError,
    WrongStateError,
)
from raven_engine.models.enums import (
    ConversationStatus,
    MessageStatus,
    OfferStatus,
    ShipmentStatus,
    TransactionStatus,
)

SHIPMENT_ID = "s1"


def _ctx(actor="alice", courier=None, transaction=None, is_admin=False) -> TransitionContext:
    return TransitionContext(
        actor_id=actor,
        shipment_id=SHIPMENT_ID,
        sender_id="alice",
        courier_id=courier,
        transaction_status=transaction,
        is_admin=is_admin,
    )


def _accept(status=OfferStatus.PENDING, shipment_id=SHIPMENT_ID) -> AcceptOffer:
    return AcceptOffer("o1", shipment_id, status)


def test_accept_offer_matches_and_requests_effects():
    result = transition(Aggregate.SHIPMENT, ShipmentStatus.OPEN, _accept(), _ctx())

    assert isinstance(result, Accepted)
    assert result.state == ShipmentStatus.MATCHED
    assert set(result.effects) == {
        Effect.HOLD_PAYMENT,
        Effect.REJECT_SIBLING_OFFERS,
        Effect.MATCH_CONVERSATION,
    }


@pytest.mark.parametrize(
    "state, event, ctx, reason",
    [
        (ShipmentStatus.OPEN, _accept(), _ctx(actor="bob"), Rejection.UNAUTHORIZED),
        (ShipmentStatus.MATCHED, _accept(), _ctx(), Rejection.WRONG_STATE),
        (ShipmentStatus.OPEN, _accept(status=OfferStatus.REJECTED), _ctx(), Rejection.WRONG_STATE),
        (ShipmentStatus.OPEN, _accept(shipment_id="other"), _ctx(), Rejection.WRONG_STATE),
        (ShipmentStatus.DELIVERED, _accept(), _ctx(), Rejection.ALREADY_TERMINAL),
        (ShipmentStatus.CANCELLED, Cancel(), _ctx(), Rejection.ALREADY_TERMINAL),
    ],
)
def test_illegal_shipment_transitions_are_rejected(state, event, ctx, reason):
    result = transition(Aggregate.SHIPMENT, state, event, ctx)

    assert isinstance(result, Rejected)
    assert result.reason == reason
    assert not result.ok


def test_mark_in_transit_requires_courier_and_held_escrow():
    held = _ctx(actor="bob", courier="bob", transaction=TransactionStatus.HELD)
    assert transition(Aggregate.SHIPMENT, ShipmentStatus.MATCHED, MarkInTransit(), held).state == (
        ShipmentStatus.IN_TRANSIT
    )

    by_sender = _ctx(actor="alice", courier="bob", transaction=TransactionStatus.HELD)
    assert transition(Aggregate.SHIPMENT, ShipmentStatus.MATCHED, MarkInTransit(), by_sender).reason == (
        Rejection.UNAUTHORIZED
    )

    no_escrow = _ctx(actor="bob", courier="bob")
    assert transition(Aggregate.SHIPMENT, ShipmentStatus.MATCHED, MarkInTransit(), no_escrow).reason == (
        Rejection.WRONG_STATE
    )


def test_confirm_delivery_releases_from_matched_or_in_transit():
    ctx = _ctx(courier="bob", transaction=TransactionStatus.HELD)
    for state in (ShipmentStatus.MATCHED, ShipmentStatus.IN_TRANSIT):
        result = transition(Aggregate.SHIPMENT, state, ConfirmDelivery(), ctx)
        assert result.state == ShipmentStatus.DELIVERED
        assert result.effects == (Effect.RELEASE_PAYMENT,)


def test_confirm_delivery_after_settlement_is_already_terminal():
    ctx = _ctx(courier="bob", transaction=TransactionStatus.RELEASED)
    result = transition(Aggregate.SHIPMENT, ShipmentStatus.IN_TRANSIT, ConfirmDelivery(), ctx)

    assert result.reason == Rejection.ALREADY_TERMINAL


def test_cancel_refunds_only_with_held_escrow():
    held = transition(
        Aggregate.SHIPMENT,
        ShipmentStatus.MATCHED,
        Cancel(),
        _ctx(courier="bob", transaction=TransactionStatus.HELD),
    )
    assert held.state == ShipmentStatus.CANCELLED
    assert held.effects == (Effect.REFUND_PAYMENT,)

    unmatched = transition(Aggregate.SHIPMENT, ShipmentStatus.OPEN, Cancel(), _ctx())
    assert unmatched.state == ShipmentStatus.CANCELLED
    assert unmatched.effects == ()

    no_escrow = transition(Aggregate.SHIPMENT, ShipmentStatus.MATCHED, Cancel(), _ctx(courier="bob"))
    assert no_escrow.reason == Rejection.WRONG_STATE


def test_admin_may_cancel_someone_elses_shipment():
    ctx = _ctx(actor="ops", courier="bob", transaction=TransactionStatus.HELD, is_admin=True)
    assert transition(Aggregate.SHIPMENT, ShipmentStatus.IN_TRANSIT, Cancel(), ctx).state == (
        ShipmentStatus.CANCELLED
    )

    stranger = _ctx(actor="mallory", courier="bob", transaction=TransactionStatus.HELD)
    assert transition(Aggregate.SHIPMENT, ShipmentStatus.IN_TRANSIT, Cancel(), stranger).reason == (
        Rejection.UNAUTHORIZED
    )


def test_offer_creation_is_gated_on_open_shipment():
    assert create_offer(CreateOffer(ShipmentStatus.OPEN), _ctx(actor="bob")).state == OfferStatus.PENDING
    assert create_offer(CreateOffer(ShipmentStatus.MATCHED), _ctx(actor="bob")).reason == Rejection.WRONG_STATE
    assert create_offer(CreateOffer(ShipmentStatus.DELIVERED), _ctx(actor="bob")).reason == (
        Rejection.ALREADY_TERMINAL
    )
    assert create_offer(CreateOffer(ShipmentStatus.OPEN), _ctx(actor="alice")).reason == Rejection.UNAUTHORIZED


def test_offer_moves_only_from_pending():
    assert transition(Aggregate.OFFER, OfferStatus.PENDING, AcceptBid()).state == OfferStatus.ACCEPTED
    assert transition(Aggregate.OFFER, OfferStatus.PENDING, RejectBid()).state == OfferStatus.REJECTED
    assert transition(Aggregate.OFFER, OfferStatus.ACCEPTED, RejectBid()).reason == Rejection.ALREADY_TERMINAL


def test_conversation_activates_when_counterpart_replies():
    assert transition(Aggregate.CONVERSATION, ConversationStatus.PENDING, Reply(by_opener=True)).state == (
        ConversationStatus.PENDING
    )
    assert transition(Aggregate.CONVERSATION, ConversationStatus.PENDING, Reply(by_opener=False)).state == (
        ConversationStatus.ACTIVE
    )
    assert transition(Aggregate.CONVERSATION, ConversationStatus.MATCHED, Reply(by_opener=False)).state == (
        ConversationStatus.MATCHED
    )
    assert transition(Aggregate.CONVERSATION, ConversationStatus.ACTIVE, ShipmentMatched()).state == (
        ConversationStatus.MATCHED
    )


def test_message_status_only_moves_forward():
    assert transition(Aggregate.MESSAGE, MessageStatus.SENT, DeliverMessage()).state == MessageStatus.DELIVERED
    assert transition(Aggregate.MESSAGE, MessageStatus.SENT, ReadMessage()).state == MessageStatus.READ
    assert transition(Aggregate.MESSAGE, MessageStatus.DELIVERED, DeliverMessage()).reason == Rejection.WRONG_STATE
    assert transition(Aggregate.MESSAGE, MessageStatus.READ, ReadMessage()).reason == Rejection.ALREADY_TERMINAL


def test_transaction_settles_once():
    assert transition(Aggregate.TRANSACTION, TransactionStatus.HELD, Release()).state == TransactionStatus.RELEASED
    assert transition(Aggregate.TRANSACTION, TransactionStatus.HELD, Refund()).state == TransactionStatus.REFUNDED
    assert transition(Aggregate.TRANSACTION, TransactionStatus.RELEASED, Refund()).reason == (
        Rejection.ALREADY_TERMINAL
    )


def test_unwrap_raises_typed_errors_with_user_message():
    with pytest.raises(WrongStateError) as excinfo:
        unwrap(Rejected(Rejection.WRONG_STATE, "nope"), "This delivery was cancelled.")
    assert excinfo.value.user_message == "This delivery was cancelled."

    with pytest.raises(UnauthorizedError):
        unwrap(Rejected(Rejection.UNAUTHORIZED, "nope"))
    with pytest.raises(AlreadyTerminalError):
        unwrap(Rejected(Rejection.ALREADY_TERMINAL, "nope"))


def test_check_version():
    assert check_version(None, 3) is None
    assert check_version(3, 3) is None
    with pytest.raises(VersionConflictError):
        unwrap(check_version(2, 3))
