"""
Plan and credit pack catalog.

Maps opaque Stripe price ids to plan or pack definitions. Unknown ids raise
UnknownPriceIdError; callers decide whether that is retryable.
"""

import logging
import os
from typing import Iterable, Optional

from ledger.constants import (
    CREDIT_EXPIRATION_MODE,
    PACK_SETTINGS,
    PLAN_SETTINGS,
    ROLLOVER_MULTIPLIER,
)
from ledger.errors import UnknownPriceIdError
from ledger.models import ExpirationMode, PackDefinition, PlanDefinition, PlanMatch

logger = logging.getLogger(__name__)


class PriceCatalog:
    def __init__(
        self,
        plans: Iterable[PlanDefinition] = (),
        packs: Iterable[PackDefinition] = (),
    ):
        self._by_price: dict[str, PlanMatch] = {}
        for plan in plans:
            self._add(plan.price_id, PlanMatch(type="plan", definition=plan))
        for pack in packs:
            self._add(pack.price_id, PlanMatch(type="pack", definition=pack))

    def _add(self, price_id: str, match: PlanMatch) -> None:
        if price_id in self._by_price:
            raise ValueError(f"Duplicate price id in catalog: {price_id}")
        self._by_price[price_id] = match

    def __contains__(self, price_id) -> bool:
        return price_id in self._by_price

    def resolve(self, price_id: Optional[str]) -> PlanMatch:
        match = self._by_price.get(price_id) if price_id else None
        if match is None:
            raise UnknownPriceIdError(price_id)
        return match

    def resolve_plan(self, price_id: Optional[str]) -> PlanDefinition:
        match = self.resolve(price_id)
        if match.type != "plan":
            raise UnknownPriceIdError(price_id, reason="credit pack, not a subscription plan")
        return match.definition

    def resolve_pack(self, price_id: Optional[str]) -> PackDefinition:
        match = self.resolve(price_id)
        if match.type != "pack":
            raise UnknownPriceIdError(price_id, reason="subscription plan, not a credit pack")
        return match.definition

    @classmethod
    def from_env(cls) -> "PriceCatalog":
        mode = ExpirationMode(os.environ.get("CREDIT_EXPIRATION_MODE") or CREDIT_EXPIRATION_MODE)
        plans = [
            PlanDefinition(
                key=key,
                name=name,
                price_id=os.environ.get(env_var) or fallback,
                credits_per_cycle=credits,
                max_rollover=credits * ROLLOVER_MULTIPLIER,
                expiration_mode=mode,
            )
            for key, name, env_var, fallback, credits in PLAN_SETTINGS
        ]
        packs = [
            PackDefinition(
                key=key,
                name=name,
                price_id=os.environ.get(env_var) or fallback,
                credits=credits,
            )
            for key, name, env_var, fallback, credits in PACK_SETTINGS
        ]
        logger.debug(f"Loaded catalog with {len(plans)} plans and {len(packs)} packs")
        return cls(plans, packs)


_default_catalog: Optional[PriceCatalog] = None


def get_catalog() -> PriceCatalog:
    """Catalog built from the environment, cached per container."""
    global _default_catalog
    if _default_catalog is None:
        _default_catalog = PriceCatalog.from_env()
    return _default_catalog


def reset_catalog() -> None:
    """Drop the cached catalog. Used in tests after changing env vars."""
    global _default_catalog
    _default_catalog = None
