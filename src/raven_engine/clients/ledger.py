"""Ledger store helpers: typed loaders and optimistic-concurrency translation."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from raven_engine.clients.database import (
    Conversation,
    Offer,
    Shipment,
    Transaction,
    session_scope,
)
from raven_engine.core.transitions import check_version, unwrap
from raven_engine.errors import NotFoundError, VersionConflictError
from raven_engine.models.enums import OfferStatus, TransactionStatus

LOG = logging.getLogger(__name__)


@contextmanager
def ledger_scope() -> Iterator[Session]:
    """``session_scope`` whose version and uniqueness races surface as conflicts."""
    try:
        with session_scope() as db:
            yield db
    except StaleDataError as exc:
        LOG.info("Optimistic version check failed: %s", exc)
        raise VersionConflictError(str(exc)) from exc
    except IntegrityError as exc:
        LOG.info("Concurrent write lost a uniqueness race: %s", exc.orig)
        raise VersionConflictError(str(exc.orig)) from exc


def load_shipment(db: Session, shipment_id: str) -> Shipment:
    shipment = db.get(Shipment, shipment_id)
    if shipment is None:
        raise NotFoundError(f"Shipment {shipment_id} not found.")
    return shipment


def load_offer(db: Session, offer_id: str) -> Offer:
    offer = db.get(Offer, offer_id)
    if offer is None:
        raise NotFoundError(f"Offer {offer_id} not found.")
    return offer


def load_conversation(db: Session, conversation_id: str) -> Conversation:
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_id} not found.")
    return conversation


def expect_version(row, expected_version: Optional[int]) -> None:
    """Reject when the caller read an older version of ``row``."""
    rejection = check_version(expected_version, row.version)
    if rejection is not None:
        unwrap(rejection)


def held_transaction(db: Session, shipment_id: str) -> Optional[Transaction]:
    return (
        db.query(Transaction)
        .filter(Transaction.shipment_id == shipment_id, Transaction.status == TransactionStatus.HELD)
        .one_or_none()
    )


def latest_transaction(db: Session, shipment_id: str) -> Optional[Transaction]:
    return (
        db.query(Transaction)
        .filter(Transaction.shipment_id == shipment_id)
        .order_by(Transaction.created_at.desc())
        .first()
    )


def offers_with_status(
    db: Session,
    shipment_id: str,
    status: OfferStatus,
    exclude_id: Optional[str] = None,
) -> List[Offer]:
    query = db.query(Offer).filter(Offer.shipment_id == shipment_id, Offer.status == status)
    if exclude_id is not None:
        query = query.filter(Offer.id != exclude_id)
    return query.order_by(Offer.created_at.asc()).all()


def find_conversation(db: Session, shipment_id: str, counterpart_id: str) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(Conversation.shipment_id == shipment_id, Conversation.user2_id == counterpart_id)
        .one_or_none()
    )
