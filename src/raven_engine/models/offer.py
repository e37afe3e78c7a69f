"""Offer models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from raven_engine.models.enums import OfferStatus


class Offer(BaseModel):
    """A courier's bid on a shipment."""

    id: str
    shipment_id: str
    courier_id: str
    proposed_price: Decimal
    message: Optional[str] = None
    status: OfferStatus
    version: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OfferCreateRequest(BaseModel):
    proposed_price: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)
    message: Optional[str] = Field(default=None, min_length=10)


class MatchRequest(BaseModel):
    offer_id: str
    expected_version: Optional[int] = None
