"""Closed status enumerations for every engine aggregate."""

from __future__ import annotations

from enum import Enum


class ShipmentStatus(str, Enum):
    OPEN = "OPEN"
    MATCHED = "MATCHED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class OfferStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class ConversationStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    MATCHED = "MATCHED"


class MessageType(str, Enum):
    TEXT = "TEXT"
    SYSTEM = "SYSTEM"
    OFFER = "OFFER"
    MATCH_ACCEPTED = "MATCH_ACCEPTED"


class MessageStatus(str, Enum):
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"


class TransactionStatus(str, Enum):
    HELD = "HELD"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"


class SettlementOperation(str, Enum):
    HOLD = "HOLD"
    RELEASE = "RELEASE"
    REFUND = "REFUND"


class SettlementStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMMITTED = "COMMITTED"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"


class NotificationKind(str, Enum):
    OFFER_RECEIVED = "OFFER_RECEIVED"
    OFFER_REJECTED = "OFFER_REJECTED"
    MATCH_ACCEPTED = "MATCH_ACCEPTED"
    IN_TRANSIT = "IN_TRANSIT"
    PAYMENT_RELEASED = "PAYMENT_RELEASED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    NEW_MESSAGE = "NEW_MESSAGE"


TERMINAL_SHIPMENT_STATUSES = frozenset({ShipmentStatus.DELIVERED, ShipmentStatus.CANCELLED})
TERMINAL_TRANSACTION_STATUSES = frozenset({TransactionStatus.RELEASED, TransactionStatus.REFUNDED})
MESSAGE_STATUS_RANK = {MessageStatus.SENT: 0, MessageStatus.DELIVERED: 1, MessageStatus.READ: 2}
