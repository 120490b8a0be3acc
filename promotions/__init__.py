"""
Recharge Promotions Package

Provides promotion rules, the catalog that stores them together with their
usage history, and the selector that resolves the single promotion applied
to a recharge.
"""

from .models import (
    PromoType,
    PromoStatus,
    PromotionRule,
    PromotionUsage,
    PromotionQuote,
)
from .catalog import (
    PromotionCatalog,
    PromotionError,
    PromotionNotFoundError,
    PromotionValidationError,
    PromotionExhausted,
)
from .selector import PromotionSelector, quote_for

__all__ = [
    "PromoType",
    "PromoStatus",
    "PromotionRule",
    "PromotionUsage",
    "PromotionQuote",
    "PromotionCatalog",
    "PromotionError",
    "PromotionNotFoundError",
    "PromotionValidationError",
    "PromotionExhausted",
    "PromotionSelector",
    "quote_for",
]
