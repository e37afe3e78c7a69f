import pytest

from conftest import COURIER, OTHER_COURIER, SENDER
from raven_engine.errors import NotFoundError, UnauthorizedError, WrongStateError
from raven_engine.models.enums import (
    ConversationStatus,
    MessageStatus,
    MessageType,
    NotificationKind,
)


def _inbox_entry(gateway, user_id, conversation_id):
    return next(item for item in gateway.list_conversations(user_id) if item.conversation.id == conversation_id)


def test_offer_opens_a_pending_conversation(conversation_gateway, notifier, open_shipment, offer):
    entry = conversation_gateway.list_conversations(SENDER)[0]

    assert entry.other_user_id == COURIER
    assert entry.conversation.status == ConversationStatus.PENDING
    assert entry.conversation.opened_by == COURIER
    assert entry.unread_count == 1
    assert entry.can_match

    messages = conversation_gateway.list_messages(entry.conversation.id, SENDER)
    assert [item.type for item in messages] == [MessageType.OFFER]
    assert "Happy to carry this for you." in messages[0].content
    assert NotificationKind.OFFER_RECEIVED in notifier.kinds_for(SENDER)


def test_reply_from_the_other_side_activates_the_conversation(conversation_gateway, notifier, offer):
    conversation_id = conversation_gateway.list_conversations(SENDER)[0].conversation.id

    conversation_gateway.send_message(conversation_id, COURIER, "I can pick it up on Monday.")
    assert conversation_gateway.get_conversation(conversation_id, COURIER).status == ConversationStatus.PENDING

    conversation_gateway.send_message(conversation_id, SENDER, "Monday works for me.")
    conversation = conversation_gateway.get_conversation(conversation_id, SENDER)
    assert conversation.status == ConversationStatus.ACTIVE
    assert conversation.last_message == "Monday works for me."
    assert NotificationKind.NEW_MESSAGE in notifier.kinds_for(COURIER)


def test_sender_can_open_a_conversation_with_a_courier(conversation_gateway, open_shipment):
    conversation = conversation_gateway.get_or_create(
        open_shipment.id,
        SENDER,
        recipient_id=OTHER_COURIER,
        initial_message="Are you travelling to Madrid soon?",
    )

    assert conversation.user1_id == SENDER
    assert conversation.user2_id == OTHER_COURIER
    assert conversation.unread_user2 == 1

    again = conversation_gateway.get_or_create(open_shipment.id, OTHER_COURIER)
    assert again.id == conversation.id


def test_owner_must_name_a_recipient(conversation_gateway, open_shipment):
    with pytest.raises(WrongStateError):
        conversation_gateway.get_or_create(open_shipment.id, SENDER)


def test_unread_counters_and_read_receipts(conversation_gateway, offer):
    conversation_id = conversation_gateway.list_conversations(SENDER)[0].conversation.id
    conversation_gateway.send_message(conversation_id, COURIER, "Do you have a box for it?")

    assert _inbox_entry(conversation_gateway, SENDER, conversation_id).unread_count == 2
    assert conversation_gateway.unread_total(SENDER) == 2
    assert conversation_gateway.mark_delivered(conversation_id, SENDER) == 2
    assert conversation_gateway.mark_delivered(conversation_id, SENDER) == 0

    conversation = conversation_gateway.mark_read(conversation_id, SENDER)
    assert conversation.unread_user1 == 0
    statuses = {item.status for item in conversation_gateway.list_messages(conversation_id, SENDER)}
    assert statuses == {MessageStatus.READ}

    # Reading again changes nothing.
    again = conversation_gateway.mark_read(conversation_id, SENDER)
    assert again.unread_user1 == 0
    assert again.version == conversation.version


def test_reader_only_clears_their_own_counter(conversation_gateway, offer):
    conversation_id = conversation_gateway.list_conversations(SENDER)[0].conversation.id
    conversation_gateway.send_message(conversation_id, SENDER, "Sounds good, thanks!")

    conversation = conversation_gateway.mark_read(conversation_id, SENDER)

    assert conversation.unread_user1 == 0
    assert conversation.unread_user2 == 1


def test_engine_message_types_are_not_public(conversation_gateway, offer):
    conversation_id = conversation_gateway.list_conversations(SENDER)[0].conversation.id

    for message_type in (MessageType.SYSTEM, MessageType.MATCH_ACCEPTED):
        with pytest.raises(UnauthorizedError):
            conversation_gateway.send_message(conversation_id, SENDER, "Paid!", message_type)


def test_outsiders_cannot_read_or_write(conversation_gateway, offer):
    conversation_id = conversation_gateway.list_conversations(SENDER)[0].conversation.id

    with pytest.raises(UnauthorizedError):
        conversation_gateway.send_message(conversation_id, OTHER_COURIER, "Let me in")
    with pytest.raises(UnauthorizedError):
        conversation_gateway.list_messages(conversation_id, OTHER_COURIER)
    with pytest.raises(NotFoundError):
        conversation_gateway.get_conversation("missing", SENDER)


def test_match_marks_conversation_and_disables_matching(conversation_gateway, matched):
    entry = _inbox_entry(conversation_gateway, SENDER, matched.conversation_id)

    assert entry.conversation.status == ConversationStatus.MATCHED
    assert not entry.can_match

    conversation_gateway.send_message(matched.conversation_id, COURIER, "Picked it up.")
    assert conversation_gateway.get_conversation(matched.conversation_id, SENDER).status == (
        ConversationStatus.MATCHED
    )


def test_withdrawn_shipment_closes_conversations(conversation_gateway, shipment_service, open_shipment, offer):
    shipment_service.withdraw(open_shipment.id, SENDER)
    conversation_id = conversation_gateway.list_conversations(SENDER)[0].conversation.id

    with pytest.raises(WrongStateError) as excinfo:
        conversation_gateway.send_message(conversation_id, SENDER, "Sorry, plans changed.")
    assert excinfo.value.user_message == "This delivery was cancelled."
