"""Identifier helpers."""

from __future__ import annotations

import uuid

from raven_engine.models.enums import SettlementOperation


def generate_id() -> str:
    """Return a random record identifier."""
    return uuid.uuid4().hex


def idempotency_key(shipment_id: str, operation: SettlementOperation, attempt: int) -> str:
    """Compose the processor idempotency key for one settlement attempt."""
    return f"{shipment_id}:{operation.value.lower()}:{attempt}"
