"""SQLite/SQLAlchemy ledger storage for the Raven engine."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional

from sqlalchemy import (
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker

from raven_engine import constants
from raven_engine.models.enums import (
    ConversationStatus,
    MessageStatus,
    MessageType,
    OfferStatus,
    SettlementOperation,
    SettlementStatus,
    ShipmentStatus,
    TransactionStatus,
)
from raven_engine.utils.pathing import ensure_runtime_directories

MONEY = Numeric(12, 2, asdecimal=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseModel(DeclarativeBase):
    """Declarative base class for SQLAlchemy models."""


def _database_url() -> str:
    return constants.DATABASE_URL or f"sqlite:///{constants.DB_FILE}"


def _build_engine(echo: bool = False):
    ensure_runtime_directories()
    url = _database_url()
    # Writers queue on the SQLite file lock instead of failing fast.
    connect_args = {"timeout": 30, "check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=echo, future=True, connect_args=connect_args)


ENGINE = None
SESSION_FACTORY = None


class Shipment(BaseModel):
    """Aggregate root: gates every offer, conversation and transaction write."""

    __tablename__ = "shipments"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    sender_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    courier_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    origin_country: Mapped[str] = mapped_column(String, nullable=False)
    origin_city: Mapped[str] = mapped_column(String, nullable=False)
    origin_address: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    destination_country: Mapped[str] = mapped_column(String, nullable=False)
    destination_city: Mapped[str] = mapped_column(String, nullable=False)
    destination_address: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    package_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    window_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[ShipmentStatus] = mapped_column(
        Enum(ShipmentStatus), default=ShipmentStatus.OPEN, nullable=False
    )
    settlement_claim: Mapped[Optional[SettlementOperation]] = mapped_column(
        Enum(SettlementOperation), nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    offers: Mapped[list["Offer"]] = relationship(back_populates="shipment", order_by="Offer.created_at")

    __mapper_args__ = {"version_id_col": version}


class Offer(BaseModel):
    """A courier's bid on a shipment."""

    __tablename__ = "offers"
    __table_args__ = (
        Index(
            "uq_offers_live_per_courier",
            "shipment_id",
            "courier_id",
            unique=True,
            sqlite_where=text("status IN ('PENDING', 'ACCEPTED')"),
            postgresql_where=text("status IN ('PENDING', 'ACCEPTED')"),
        ),
        Index(
            "uq_offers_accepted_per_shipment",
            "shipment_id",
            unique=True,
            sqlite_where=text("status = 'ACCEPTED'"),
            postgresql_where=text("status = 'ACCEPTED'"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    shipment_id: Mapped[str] = mapped_column(String, ForeignKey("shipments.id"), nullable=False)
    courier_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    proposed_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[OfferStatus] = mapped_column(
        Enum(OfferStatus), default=OfferStatus.PENDING, nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    shipment: Mapped["Shipment"] = relationship(back_populates="offers")

    __mapper_args__ = {"version_id_col": version}


class Conversation(BaseModel):
    """Chat between a shipment owner and one counterpart."""

    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("shipment_id", "user2_id", name="uq_conversation_pair"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    shipment_id: Mapped[str] = mapped_column(String, ForeignKey("shipments.id"), nullable=False)
    user1_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    user2_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    opened_by: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[ConversationStatus] = mapped_column(
        Enum(ConversationStatus), default=ConversationStatus.PENDING, nullable=False
    )
    unread_user1: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unread_user2: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    shipment: Mapped["Shipment"] = relationship()
    messages: Mapped[list["Message"]] = relationship(
        back_populates="conversation", order_by="Message.sequence"
    )

    __mapper_args__ = {"version_id_col": version}


class Message(BaseModel):
    """Chat message with monotonic delivery status."""

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    conversation_id: Mapped[str] = mapped_column(String, ForeignKey("conversations.id"), nullable=False)
    sender_id: Mapped[str] = mapped_column(String, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[MessageType] = mapped_column(Enum(MessageType), default=MessageType.TEXT, nullable=False)
    status: Mapped[MessageStatus] = mapped_column(
        Enum(MessageStatus), default=MessageStatus.SENT, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    conversation: Mapped["Conversation"] = relationship(back_populates="messages")


class Transaction(BaseModel):
    """Escrow record; at most one HELD row per shipment."""

    __tablename__ = "transactions"
    __table_args__ = (
        Index(
            "uq_transactions_held_per_shipment",
            "shipment_id",
            unique=True,
            sqlite_where=text("status = 'HELD'"),
            postgresql_where=text("status = 'HELD'"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    shipment_id: Mapped[str] = mapped_column(String, ForeignKey("shipments.id"), nullable=False, index=True)
    payer_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    payee_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    payout_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus), default=TransactionStatus.HELD, nullable=False
    )
    hold_reference: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    receipt_reference: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}


class SettlementRecord(BaseModel):
    """Idempotency ledger for processor calls, one row per (shipment, operation)."""

    __tablename__ = "settlement_records"
    __table_args__ = (UniqueConstraint("shipment_id", "operation", name="uq_settlement_operation"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    shipment_id: Mapped[str] = mapped_column(String, ForeignKey("shipments.id"), nullable=False)
    operation: Mapped[SettlementOperation] = mapped_column(Enum(SettlementOperation), nullable=False)
    status: Mapped[SettlementStatus] = mapped_column(
        Enum(SettlementStatus), default=SettlementStatus.PENDING, nullable=False
    )
    attempt: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String, nullable=False)
    payer_id: Mapped[str] = mapped_column(String, nullable=False)
    payee_id: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    hold_reference: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    receipt_reference: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}


def init_db(echo: bool = False) -> None:
    """Create tables if they do not exist."""
    global ENGINE, SESSION_FACTORY
    if ENGINE is not None:
        ENGINE.dispose()
    ENGINE = _build_engine(echo=echo)
    SESSION_FACTORY = sessionmaker(
        bind=ENGINE,
        autoflush=False,
        expire_on_commit=False,
        future=True,
    )
    BaseModel.metadata.create_all(bind=ENGINE)


@contextmanager
def session_scope() -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""
    if SESSION_FACTORY is None:
        init_db()
    session = SESSION_FACTORY()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
