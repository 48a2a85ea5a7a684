import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, Optional

from pydantic import ValidationError

from shared.documents import DocumentStore
from shared.utils import utcnow, DurableStoreUnavailable, PricingResolutionError
from app.models import PriceOverrideDB, normalize_sku

logger = logging.getLogger(__name__)

OVERRIDES = "price_overrides"


@dataclass(frozen=True)
class PriceQuote:
    price: Decimal
    is_override: bool = False
    degraded: bool = False


def _latest(overrides: List[PriceOverrideDB]) -> Optional[PriceOverrideDB]:
    if not overrides:
        return None
    # most recently updated wins, id breaks ties
    return max(overrides, key=lambda o: (o.updated_at or o.created_at, o.id or ""))


class PricingResolver:
    """
    Effective price per customer: an active override for (customer, sku),
    otherwise the product's base price. Anonymous callers always get the base price.

    Lookup failures never escape; they are logged and the quote is marked degraded.
    """

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def active_overrides(self, customer_id: str) -> Dict[str, PriceOverrideDB]:
        """
        The winning active override per sku. Raises PricingResolutionError when
        the store is unreachable; a malformed record is skipped so only its sku
        falls back to the base price.
        """
        try:
            docs = await self.store.query(OVERRIDES, {"customer_id": customer_id, "is_active": True})
        except DurableStoreUnavailable as e:
            raise PricingResolutionError(f"Override lookup failed for {customer_id}: {e.detail}") from e

        overrides = []
        for doc in docs:
            try:
                overrides.append(PriceOverrideDB(**doc))
            except ValidationError:
                logger.warning(
                    f"Skipping malformed price override {doc.get('_id')}",
                    extra={"identity": customer_id, "sku": doc.get("sku")},
                )

        now = self.clock()
        by_sku: Dict[str, List[PriceOverrideDB]] = {}
        for override in overrides:
            if override.is_effective(now):
                by_sku.setdefault(override.sku, []).append(override)
        return {sku: _latest(candidates) for sku, candidates in by_sku.items()}

    async def resolve_prices(
        self,
        customer_id: Optional[str],
        base_prices: Mapping[str, Decimal],
    ) -> Dict[str, PriceQuote]:
        base_prices = {normalize_sku(sku): Decimal(str(price)) for sku, price in base_prices.items()}
        if not customer_id:
            return {sku: PriceQuote(price) for sku, price in base_prices.items()}

        try:
            overrides = await self.active_overrides(customer_id)
        except PricingResolutionError as e:
            logger.warning(
                f"Falling back to base prices: {e}",
                extra={"identity": customer_id, "sku": ",".join(base_prices)},
            )
            return {sku: PriceQuote(price, degraded=True) for sku, price in base_prices.items()}

        quotes = {}
        for sku, price in base_prices.items():
            override = overrides.get(sku)
            if override is not None:
                quotes[sku] = PriceQuote(override.price, is_override=True)
            else:
                quotes[sku] = PriceQuote(price)
        return quotes

    async def resolve_price(self, customer_id: Optional[str], sku: str, base_price: Decimal) -> PriceQuote:
        sku = normalize_sku(sku)
        quotes = await self.resolve_prices(customer_id, {sku: base_price})
        return quotes[sku]
