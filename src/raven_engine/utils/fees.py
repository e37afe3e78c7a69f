"""Platform fee split computed at hold time."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional, Tuple

from raven_engine import constants
from raven_engine.utils.cache import TTLCache

CENT = Decimal("0.01")


def default_rate_loader(currency: str) -> Decimal:
    return constants.PLATFORM_FEE_RATE


class FeeSchedule:
    """Resolves the platform fee rate per currency through an injected cache."""

    def __init__(
        self,
        rate_loader: Callable[[str], Decimal] = default_rate_loader,
        cache: Optional[TTLCache[Decimal]] = None,
    ) -> None:
        self.rate_loader = rate_loader
        self.cache = cache if cache is not None else TTLCache(constants.FEE_CACHE_TTL_SECONDS)

    def rate(self, currency: str) -> Decimal:
        return self.cache.get_or_load(currency.upper(), self.rate_loader)

    def split(self, amount: Decimal, currency: str) -> Tuple[Decimal, Decimal]:
        """Return ``(platform_fee, payout_amount)`` for a held amount."""
        amount = Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)
        fee = (amount * self.rate(currency)).quantize(CENT, rounding=ROUND_HALF_UP)
        return fee, amount - fee
