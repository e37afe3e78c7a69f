"""Conversation and message gateway."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from raven_engine.clients.database import (
    Conversation as ConversationORM,
    Message as MessageORM,
    Shipment as ShipmentORM,
    session_scope,
    utcnow,
)
from raven_engine.clients.ledger import find_conversation, ledger_scope, load_conversation, load_shipment
from raven_engine.clients.notifier import NotificationSender, dispatch
from raven_engine.core.transitions import (
    Aggregate,
    DeliverMessage,
    ReadMessage,
    Reply,
    transition,
    unwrap,
)
from raven_engine.errors import UnauthorizedError, VersionConflictError, WrongStateError
from raven_engine.models.conversation import Conversation, InboxEntry, Message
from raven_engine.models.enums import (
    ConversationStatus,
    MessageStatus,
    MessageType,
    NotificationKind,
    ShipmentStatus,
)
from raven_engine.utils.ids import generate_id

LOG = logging.getLogger(__name__)

PUBLIC_MESSAGE_TYPES = frozenset({MessageType.TEXT, MessageType.OFFER})
SEND_ATTEMPTS = 3

T = TypeVar("T")


def ensure_conversation(
    db: Session,
    shipment: ShipmentORM,
    counterpart_id: str,
    opened_by: str,
) -> ConversationORM:
    """Return the conversation between the shipment owner and ``counterpart_id``, creating it if needed."""
    conversation = find_conversation(db, shipment.id, counterpart_id)
    if conversation is None:
        conversation = ConversationORM(
            id=generate_id(),
            shipment_id=shipment.id,
            user1_id=shipment.sender_id,
            user2_id=counterpart_id,
            opened_by=opened_by,
            status=ConversationStatus.PENDING,
            unread_user1=0,
            unread_user2=0,
        )
        db.add(conversation)
        db.flush()
    return conversation


def append_message(
    db: Session,
    conversation: ConversationORM,
    sender_id: str,
    content: str,
    message_type: MessageType,
) -> MessageORM:
    """Append a SENT message and bump the recipient's unread counter."""
    sequence = (
        db.query(func.count(MessageORM.id))
        .filter(MessageORM.conversation_id == conversation.id)
        .scalar()
    ) + 1
    message = MessageORM(
        id=generate_id(),
        sequence=sequence,
        conversation_id=conversation.id,
        sender_id=sender_id,
        content=content,
        type=message_type,
        status=MessageStatus.SENT,
        created_at=utcnow(),
    )
    db.add(message)

    if sender_id == conversation.user1_id:
        conversation.unread_user2 += 1
    else:
        conversation.unread_user1 += 1
    conversation.last_message = content
    conversation.last_message_at = message.created_at

    if message_type == MessageType.TEXT:
        outcome = unwrap(
            transition(
                Aggregate.CONVERSATION,
                conversation.status,
                Reply(by_opener=sender_id == conversation.opened_by),
            )
        )
        conversation.status = outcome.state
    return message


def _recipient(conversation: ConversationORM, sender_id: str) -> str:
    return conversation.user2_id if sender_id == conversation.user1_id else conversation.user1_id


def _require_participant(conversation: ConversationORM, user_id: str) -> None:
    if user_id not in (conversation.user1_id, conversation.user2_id):
        raise UnauthorizedError("You do not have access to this conversation.")


class ConversationGateway:
    """Maps chat events onto conversation state and message delivery status."""

    def __init__(self, notifier: Optional[NotificationSender] = None) -> None:
        self.notifier = notifier

    def get_or_create(
        self,
        shipment_id: str,
        actor_id: str,
        recipient_id: Optional[str] = None,
        initial_message: Optional[str] = None,
    ) -> Conversation:
        with ledger_scope() as db:
            shipment = load_shipment(db, shipment_id)
            counterpart = recipient_id if actor_id == shipment.sender_id else actor_id
            if not counterpart:
                raise WrongStateError("recipient_id is required when the shipment owner opens a conversation.")
            if counterpart == shipment.sender_id:
                raise WrongStateError("Cannot create a conversation with yourself.")
            conversation = ensure_conversation(db, shipment, counterpart, opened_by=actor_id)
            conversation_id = conversation.id

        if initial_message:
            self.send_message(conversation_id, actor_id, initial_message)
        return self.get_conversation(conversation_id, actor_id)

    def get_conversation(self, conversation_id: str, actor_id: str) -> Conversation:
        with session_scope() as db:
            conversation = load_conversation(db, conversation_id)
            _require_participant(conversation, actor_id)
            return Conversation.model_validate(conversation, from_attributes=True)

    def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
    ) -> Message:
        if message_type not in PUBLIC_MESSAGE_TYPES:
            raise UnauthorizedError(f"{message_type.value} messages are posted by the engine only.")

        def _send() -> tuple[Message, str]:
            with ledger_scope() as db:
                conversation = load_conversation(db, conversation_id)
                _require_participant(conversation, sender_id)
                if conversation.shipment.status == ShipmentStatus.CANCELLED:
                    raise WrongStateError(
                        "This conversation is closed because the shipment was cancelled.",
                        user_message="This delivery was cancelled.",
                    )
                message = append_message(db, conversation, sender_id, content, message_type)
                db.flush()
                return Message.model_validate(message, from_attributes=True), _recipient(conversation, sender_id)

        message, recipient = self._with_retries(_send)
        dispatch(
            self.notifier,
            recipient,
            NotificationKind.NEW_MESSAGE,
            conversation_id=conversation_id,
            message_id=message.id,
        )
        return message

    def post_system_message(
        self,
        conversation_id: str,
        author_id: str,
        content: str,
        message_type: MessageType = MessageType.SYSTEM,
    ) -> Message:
        """Inject an engine-authored message; not reachable from the public send path."""

        def _post() -> Message:
            with ledger_scope() as db:
                conversation = load_conversation(db, conversation_id)
                message = append_message(db, conversation, author_id, content, message_type)
                db.flush()
                return Message.model_validate(message, from_attributes=True)

        return self._with_retries(_post)

    def mark_delivered(self, conversation_id: str, recipient_id: str) -> int:
        """Move inbound SENT messages to DELIVERED; returns how many changed."""
        with ledger_scope() as db:
            conversation = load_conversation(db, conversation_id)
            _require_participant(conversation, recipient_id)
            pending = (
                db.query(MessageORM)
                .filter(
                    MessageORM.conversation_id == conversation_id,
                    MessageORM.sender_id != recipient_id,
                    MessageORM.status == MessageStatus.SENT,
                )
                .all()
            )
            for message in pending:
                message.status = unwrap(transition(Aggregate.MESSAGE, message.status, DeliverMessage())).state
            return len(pending)

    def mark_read(self, conversation_id: str, reader_id: str) -> Conversation:
        """Mark every inbound message READ and zero the reader's unread counter."""
        with ledger_scope() as db:
            conversation = load_conversation(db, conversation_id)
            _require_participant(conversation, reader_id)
            unread = (
                db.query(MessageORM)
                .filter(
                    MessageORM.conversation_id == conversation_id,
                    MessageORM.sender_id != reader_id,
                    MessageORM.status != MessageStatus.READ,
                )
                .all()
            )
            for message in unread:
                message.status = unwrap(transition(Aggregate.MESSAGE, message.status, ReadMessage())).state

            if reader_id == conversation.user1_id and conversation.unread_user1:
                conversation.unread_user1 = 0
            elif reader_id == conversation.user2_id and conversation.unread_user2:
                conversation.unread_user2 = 0
            db.flush()
            return Conversation.model_validate(conversation, from_attributes=True)

    def list_messages(self, conversation_id: str, actor_id: str) -> List[Message]:
        with session_scope() as db:
            conversation = load_conversation(db, conversation_id)
            _require_participant(conversation, actor_id)
            return [Message.model_validate(obj, from_attributes=True) for obj in conversation.messages]

    def list_conversations(self, user_id: str) -> List[InboxEntry]:
        with session_scope() as db:
            conversations = (
                db.query(ConversationORM)
                .filter(or_(ConversationORM.user1_id == user_id, ConversationORM.user2_id == user_id))
                .order_by(ConversationORM.updated_at.desc())
                .all()
            )
            entries = []
            for conversation in conversations:
                is_owner = conversation.user1_id == user_id
                entries.append(
                    InboxEntry(
                        conversation=Conversation.model_validate(conversation, from_attributes=True),
                        other_user_id=conversation.user2_id if is_owner else conversation.user1_id,
                        unread_count=conversation.unread_user1 if is_owner else conversation.unread_user2,
                        can_match=is_owner and conversation.shipment.status == ShipmentStatus.OPEN,
                    )
                )
            return entries

    def unread_total(self, user_id: str) -> int:
        return sum(entry.unread_count for entry in self.list_conversations(user_id))

    @staticmethod
    def _with_retries(operation: Callable[[], T]) -> T:
        for attempt in range(1, SEND_ATTEMPTS + 1):
            try:
                return operation()
            except VersionConflictError:
                if attempt == SEND_ATTEMPTS:
                    raise
                LOG.debug("Conversation write conflicted, retrying (attempt %d)", attempt)
        raise AssertionError("unreachable")
