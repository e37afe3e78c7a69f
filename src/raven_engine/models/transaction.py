"""Escrow transaction and settlement models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from raven_engine.models.enums import SettlementOperation, SettlementStatus, TransactionStatus
from raven_engine.models.offer import Offer
from raven_engine.models.shipment import Shipment


class Transaction(BaseModel):
    """Escrow record for one matched shipment."""

    id: str
    shipment_id: str
    payer_id: str
    payee_id: str
    amount: Decimal
    platform_fee: Decimal
    payout_amount: Decimal
    currency: str
    status: TransactionStatus
    hold_reference: Optional[str] = None
    receipt_reference: Optional[str] = None
    version: int
    created_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UserTransaction(BaseModel):
    """Transaction listed for a participant, with their role."""

    transaction: Transaction
    role: str
    other_user_id: str


class SettlementRecord(BaseModel):
    """Idempotency ledger entry for one processor operation."""

    id: str
    shipment_id: str
    operation: SettlementOperation
    status: SettlementStatus
    attempt: int
    idempotency_key: str
    payer_id: str
    payee_id: str
    amount: Decimal
    currency: str
    hold_reference: Optional[str] = None
    receipt_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MatchResult(BaseModel):
    """Outcome of a successful AcceptMatch."""

    shipment: Shipment
    offer: Offer
    transaction: Transaction
    conversation_id: Optional[str] = None
    rejected_offer_ids: List[str] = Field(default_factory=list)
    replayed: bool = False


class ReconcileReport(BaseModel):
    settlements: List[SettlementRecord] = Field(default_factory=list)
    reverted_shipment_ids: List[str] = Field(default_factory=list)
