import dataclasses
import itertools
import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID

from .models import PromoStatus, PromoType, PromotionRule, PromotionUsage

logger = logging.getLogger(__name__)


class PromotionError(Exception):
    pass


class PromotionNotFoundError(PromotionError):
    pass


class PromotionValidationError(PromotionError):
    pass


class PromotionExhausted(PromotionError):
    """Raised by a claim that lost the race for the last remaining use of a rule."""


class PromotionCatalog:
    """Configured recharge promotions and the usage rows that enforce their limits.

    Rules handed out by the catalog are snapshots; the only way to change
    ``used_count`` is a successful ``claim``.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.rules: dict[int, PromotionRule] = {}
        self.usages: list[PromotionUsage] = []
        self._user_usage: dict[tuple[int, UUID], int] = {}

    # administration

    def create(self, data: dict) -> PromotionRule:
        rule = self._build({**data, "used_count": 0})
        self._validate(rule)
        with self._lock:
            rule.id = next(self._ids)
            self.rules[rule.id] = rule
        logger.info("Created promotion %s (%s, %s)", rule.id, rule.name, rule.type.value)
        return dataclasses.replace(rule)

    def update(self, promo_id: int, data: dict) -> PromotionRule:
        with self._lock:
            current = self._get_live(promo_id)
            merged = {**current.to_dict(), **data, "id": promo_id, "used_count": current.used_count}
            rule = self._build(merged)
            rule.created_at = current.created_at
            self._validate(rule)
            self.rules[promo_id] = rule
        logger.info("Updated promotion %s", promo_id)
        return dataclasses.replace(rule)

    def delete(self, promo_id: int) -> None:
        with self._lock:
            rule = self._get_live(promo_id)
            rule.deleted = True
            rule.updated_at = datetime.now(timezone.utc)
        logger.info("Deleted promotion %s", promo_id)

    def toggle_status(self, promo_id: int) -> PromotionRule:
        with self._lock:
            rule = self._get_live(promo_id)
            rule.status = PromoStatus.DISABLED if rule.status == PromoStatus.ENABLED else PromoStatus.ENABLED
            rule.updated_at = datetime.now(timezone.utc)
            return dataclasses.replace(rule)

    def get(self, promo_id: int) -> PromotionRule:
        with self._lock:
            return dataclasses.replace(self._get_live(promo_id))

    def list_promotions(
        self, page: int = 1, page_size: int = 20, status: Optional[PromoStatus] = None
    ) -> tuple[list[PromotionRule], int]:
        with self._lock:
            rules = [r for r in self.rules.values() if not r.deleted]
        if status is not None:
            rules = [r for r in rules if r.status == status]
        rules.sort(key=lambda r: (-r.priority, -r.id))
        offset = (max(page, 1) - 1) * page_size
        return [dataclasses.replace(r) for r in rules[offset:offset + page_size]], len(rules)

    # selection support

    def find_eligible(self, amount: Decimal, now: datetime) -> list[PromotionRule]:
        with self._lock:
            rules = [
                dataclasses.replace(r) for r in self.rules.values()
                if r.is_active_at(now) and r.matches_amount(amount)
            ]
        rules.sort(key=lambda r: (-r.priority, r.id))
        return rules

    def usage_count(self, promo_id: int, user_id: UUID) -> int:
        with self._lock:
            return self._user_usage.get((promo_id, user_id), 0)

    def claim(self, usage: PromotionUsage) -> PromotionRule:
        """Atomically check both limits, bump ``used_count`` and record ``usage``."""
        key = (usage.promo_id, usage.user_id)
        with self._lock:
            rule = self.rules.get(usage.promo_id)
            if rule is None or rule.deleted:
                raise PromotionExhausted(f"Promotion {usage.promo_id} is no longer available")
            if not rule.is_active_at(usage.created_at):
                raise PromotionExhausted(f"Promotion {rule.id} is not active")
            if not rule.has_capacity():
                raise PromotionExhausted(f"Promotion {rule.id} reached its total limit")
            if rule.per_user_limit and self._user_usage.get(key, 0) >= rule.per_user_limit:
                raise PromotionExhausted(f"Promotion {rule.id} reached its per-user limit")
            rule.used_count += 1
            self._user_usage[key] = self._user_usage.get(key, 0) + 1
            self.usages.append(usage)
            return dataclasses.replace(rule)

    # reporting

    def list_usages(
        self, promo_id: Optional[int] = None, user_id: Optional[UUID] = None,
        page: int = 1, page_size: int = 20,
    ) -> tuple[list[PromotionUsage], int]:
        with self._lock:
            usages = list(self.usages)
        if promo_id is not None:
            usages = [u for u in usages if u.promo_id == promo_id]
        if user_id is not None:
            usages = [u for u in usages if u.user_id == user_id]
        usages.reverse()
        offset = (max(page, 1) - 1) * page_size
        return usages[offset:offset + page_size], len(usages)

    def stats(self, now: Optional[datetime] = None) -> dict:
        now = now or datetime.now(timezone.utc)
        with self._lock:
            live = [r for r in self.rules.values() if not r.deleted]
            usages = list(self.usages)
        return {
            "total_promos": len(live),
            "active_promos": sum(1 for r in live if r.is_active_at(now)),
            "total_usages": len(usages),
            "total_bonus": sum((u.bonus_amount for u in usages), Decimal("0.00")),
            "total_discount": sum((u.discount_amount for u in usages), Decimal("0.00")),
        }

    def _get_live(self, promo_id: int) -> PromotionRule:
        rule = self.rules.get(promo_id)
        if rule is None or rule.deleted:
            raise PromotionNotFoundError(f"Promotion {promo_id} not found")
        return rule

    @staticmethod
    def _build(data: dict) -> PromotionRule:
        try:
            return PromotionRule.from_dict(data)
        except KeyError as e:
            raise PromotionValidationError(f"Missing promotion field {e}") from e
        except (TypeError, ValueError, ArithmeticError) as e:
            raise PromotionValidationError(f"Invalid promotion data: {e}") from e

    @staticmethod
    def _validate(rule: PromotionRule) -> None:
        if not isinstance(rule.name, str) or not rule.name.strip():
            raise PromotionValidationError("Promotion name cannot be empty")
        if rule.min_amount < 0:
            raise PromotionValidationError("min_amount cannot be negative")
        if rule.max_amount < 0 or (rule.max_amount and rule.max_amount < rule.min_amount):
            raise PromotionValidationError("max_amount must be 0 (unbounded) or at least min_amount")
        if rule.value <= 0:
            raise PromotionValidationError("value must be greater than 0")
        if rule.type == PromoType.DISCOUNT and not (0 < rule.value < 1):
            raise PromotionValidationError("discount value must be strictly between 0 and 1 (0.9 means 10% off)")
        if rule.max_bonus < 0:
            raise PromotionValidationError("max_bonus cannot be negative")
        if rule.per_user_limit < 0 or rule.total_limit < 0:
            raise PromotionValidationError("usage limits cannot be negative")
        if rule.start_at and rule.end_at and rule.end_at <= rule.start_at:
            raise PromotionValidationError("end_at must be after start_at")
