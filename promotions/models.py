from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Optional
from uuid import UUID
import json


CENT = Decimal("0.01")


def quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, datetime):
        value = datetime.fromisoformat(value)
    # naive times are taken as UTC so they compare with aware clocks
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class PromoType(str, Enum):
    BONUS = "bonus"
    PERCENT = "percent"
    DISCOUNT = "discount"


class PromoStatus(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


@dataclass
class PromotionRule:
    id: int
    name: str
    type: PromoType
    value: Decimal
    min_amount: Decimal = Decimal("0")
    max_amount: Decimal = Decimal("0")
    max_bonus: Decimal = Decimal("0")
    priority: int = 0
    per_user_limit: int = 0
    total_limit: int = 0
    used_count: int = 0
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    status: PromoStatus = PromoStatus.ENABLED
    description: str = ""
    deleted: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_active_at(self, now: datetime) -> bool:
        if self.deleted or self.status != PromoStatus.ENABLED:
            return False
        if self.start_at is not None and now < self.start_at:
            return False
        if self.end_at is not None and now > self.end_at:
            return False
        return True

    def matches_amount(self, amount: Decimal) -> bool:
        if amount < self.min_amount:
            return False
        return self.max_amount == 0 or amount <= self.max_amount

    def has_capacity(self) -> bool:
        return self.total_limit == 0 or self.used_count < self.total_limit

    def to_dict(self) -> dict:
        return {
            "id": self.id, "name": self.name, "description": self.description,
            "type": self.type.value, "value": str(self.value),
            "min_amount": str(self.min_amount), "max_amount": str(self.max_amount),
            "max_bonus": str(self.max_bonus), "priority": self.priority,
            "per_user_limit": self.per_user_limit, "total_limit": self.total_limit,
            "used_count": self.used_count,
            "start_at": self.start_at.isoformat() if self.start_at else None,
            "end_at": self.end_at.isoformat() if self.end_at else None,
            "status": self.status.value,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: dict) -> "PromotionRule":
        return cls(
            id=data.get("id", 0), name=data["name"], description=data.get("description", ""),
            type=PromoType(data["type"]), value=Decimal(str(data["value"])),
            min_amount=Decimal(str(data.get("min_amount", 0))),
            max_amount=Decimal(str(data.get("max_amount", 0))),
            max_bonus=Decimal(str(data.get("max_bonus", 0))),
            priority=int(data.get("priority", 0)),
            per_user_limit=int(data.get("per_user_limit", 0)),
            total_limit=int(data.get("total_limit", 0)),
            used_count=int(data.get("used_count", 0)),
            start_at=_parse_dt(data.get("start_at")), end_at=_parse_dt(data.get("end_at")),
            status=PromoStatus(data.get("status", PromoStatus.ENABLED.value)),
        )


@dataclass(frozen=True)
class PromotionUsage:
    promo_id: int
    user_id: UUID
    recharge_txn_ref: str
    amount: Decimal
    bonus_amount: Decimal
    discount_amount: Decimal
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "promo_id": self.promo_id, "user_id": str(self.user_id),
            "recharge_txn_ref": self.recharge_txn_ref, "amount": str(self.amount),
            "bonus_amount": str(self.bonus_amount), "discount_amount": str(self.discount_amount),
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class PromotionQuote:
    """Outcome of resolving a promotion for one recharge amount."""

    amount: Decimal
    rule: Optional[PromotionRule] = None
    bonus_amount: Decimal = Decimal("0.00")
    discount_amount: Decimal = Decimal("0.00")

    @property
    def promo_id(self) -> Optional[int]:
        return self.rule.id if self.rule else None

    @property
    def credited_amount(self) -> Decimal:
        return quantize(self.amount + self.bonus_amount)

    @property
    def pay_amount(self) -> Decimal:
        return quantize(self.amount - self.discount_amount)

    def to_dict(self) -> dict:
        return {
            "promo_id": self.promo_id,
            "promo_name": self.rule.name if self.rule else None,
            "promo_type": self.rule.type.value if self.rule else None,
            "amount": str(self.amount), "pay_amount": str(self.pay_amount),
            "bonus_amount": str(self.bonus_amount), "discount_amount": str(self.discount_amount),
            "credited_amount": str(self.credited_amount),
        }
