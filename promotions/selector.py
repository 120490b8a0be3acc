from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable
from uuid import UUID

from .catalog import PromotionCatalog
from .models import PromoType, PromotionQuote, PromotionRule, quantize


ZERO = Decimal("0.00")


def _bonus_benefit(rule: PromotionRule, amount: Decimal) -> tuple[Decimal, Decimal]:
    return quantize(rule.value), ZERO


def _percent_benefit(rule: PromotionRule, amount: Decimal) -> tuple[Decimal, Decimal]:
    bonus = amount * rule.value / Decimal(100)
    if rule.max_bonus > 0 and bonus > rule.max_bonus:
        bonus = rule.max_bonus
    return quantize(bonus), ZERO


def _discount_benefit(rule: PromotionRule, amount: Decimal) -> tuple[Decimal, Decimal]:
    # the ledger is credited the nominal amount; only the payment step is discounted
    return ZERO, quantize(amount - amount * rule.value)


BENEFIT_CALCULATORS: dict[PromoType, Callable[[PromotionRule, Decimal], tuple[Decimal, Decimal]]] = {
    PromoType.BONUS: _bonus_benefit,
    PromoType.PERCENT: _percent_benefit,
    PromoType.DISCOUNT: _discount_benefit,
}

_missing = set(PromoType) - set(BENEFIT_CALCULATORS)
if _missing:
    raise RuntimeError(f"No benefit calculator for promotion types: {sorted(t.value for t in _missing)}")


def quote_for(rule: PromotionRule, amount: Decimal) -> PromotionQuote:
    bonus, discount = BENEFIT_CALCULATORS[rule.type](rule, amount)
    return PromotionQuote(amount=amount, rule=rule, bonus_amount=bonus, discount_amount=discount)


class PromotionSelector:
    """Picks at most one promotion for a recharge.

    Selection reads the catalog but never writes to it, so repeated calls with
    the same catalog state and ``now`` return the same rule.
    """

    def __init__(self, catalog: PromotionCatalog):
        self.catalog = catalog

    def select(
        self, user_id: UUID, amount: Decimal, now: datetime, exclude: Iterable[int] = ()
    ) -> PromotionQuote:
        excluded = set(exclude)
        for rule in self._qualifying(user_id, amount, now):
            if rule.id in excluded:
                continue
            return quote_for(rule, amount)
        return PromotionQuote(amount=amount)

    def preview(self, user_id: UUID, amount: Decimal, now: datetime) -> list[PromotionQuote]:
        return [quote_for(rule, amount) for rule in self._qualifying(user_id, amount, now)]

    def _qualifying(self, user_id: UUID, amount: Decimal, now: datetime) -> Iterable[PromotionRule]:
        for rule in self.catalog.find_eligible(amount, now):
            if not rule.has_capacity():
                continue
            if rule.per_user_limit and self.catalog.usage_count(rule.id, user_id) >= rule.per_user_limit:
                continue
            yield rule
