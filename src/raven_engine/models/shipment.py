"""Shipment models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from raven_engine.constants import DEFAULT_CURRENCY
from raven_engine.models.enums import ShipmentStatus
from raven_engine.models.offer import Offer


class Shipment(BaseModel):
    """Delivery request exposed over the API."""

    id: str
    sender_id: str
    courier_id: Optional[str] = None
    origin_country: str
    origin_city: str
    origin_address: Optional[str] = None
    destination_country: str
    destination_city: str
    destination_address: Optional[str] = None
    content: str
    weight: float
    package_type: Optional[str] = None
    window_start: datetime
    window_end: datetime
    price: Decimal
    currency: str
    status: ShipmentStatus
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ShipmentDetail(Shipment):
    """Shipment with its offers."""

    offers: List[Offer] = Field(default_factory=list)


class ShipmentCreateRequest(BaseModel):
    origin_country: str = Field(min_length=1)
    origin_city: str = Field(min_length=1)
    origin_address: Optional[str] = None
    destination_country: str = Field(min_length=1)
    destination_city: str = Field(min_length=1)
    destination_address: Optional[str] = None
    content: str = Field(min_length=1)
    weight: float = Field(ge=0.1, le=50)
    package_type: Optional[str] = None
    window_start: datetime
    window_end: datetime
    price: Decimal = Field(ge=1, decimal_places=2)
    currency: str = Field(default=DEFAULT_CURRENCY, min_length=3, max_length=3)

    @model_validator(mode="after")
    def _check_window(self) -> "ShipmentCreateRequest":
        if self.window_end < self.window_start:
            raise ValueError("window_end must not be before window_start")
        return self


class ShipmentFilter(BaseModel):
    status: Optional[ShipmentStatus] = None
    origin_country: Optional[str] = None
    destination_country: Optional[str] = None
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None


class VersionedCommand(BaseModel):
    expected_version: Optional[int] = None
