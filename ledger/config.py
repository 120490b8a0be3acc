import json
import logging
import threading
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import ConfigValidationError
from .settings import settings

logger = logging.getLogger(__name__)


class BalanceConfig(BaseModel):
    # recharge limits
    min_recharge_amount: Decimal = Decimal("1.00")
    max_recharge_amount: Decimal = Decimal("50000.00")
    max_daily_recharge: Decimal = Decimal("100000.00")
    max_balance_limit: Decimal = Decimal("100000.00")

    # alert thresholds
    large_recharge_threshold: Decimal = Decimal("1000.00")
    large_consume_threshold: Decimal = Decimal("500.00")
    frequent_recharge_count: int = 5
    frequent_consume_count: int = 10
    large_admin_adjust_threshold: Decimal = Decimal("1000.00")

    model_config = ConfigDict(frozen=True)


DEFAULT_BALANCE_CONFIG = BalanceConfig()


def normalize_config(data: dict) -> BalanceConfig:
    """Build a config from stored data, replacing missing or non-positive values with defaults."""
    defaults = DEFAULT_BALANCE_CONFIG.model_dump()
    merged = dict(defaults)
    for key in defaults:
        value = data.get(key)
        if value is None:
            continue
        try:
            if Decimal(str(value)) > 0:
                merged[key] = value
        except ArithmeticError:
            logger.warning("Ignoring invalid balance config value %s=%r", key, value)
    return BalanceConfig(**merged)


def validate_config(cfg: BalanceConfig) -> None:
    if cfg.min_recharge_amount <= 0:
        raise ConfigValidationError("min_recharge_amount must be greater than 0")
    if cfg.max_recharge_amount <= 0:
        raise ConfigValidationError("max_recharge_amount must be greater than 0")
    if cfg.min_recharge_amount > cfg.max_recharge_amount:
        raise ConfigValidationError("min_recharge_amount cannot be greater than max_recharge_amount")
    if cfg.max_daily_recharge <= 0:
        raise ConfigValidationError("max_daily_recharge must be greater than 0")
    if cfg.max_balance_limit <= 0:
        raise ConfigValidationError("max_balance_limit must be greater than 0")
    if cfg.frequent_recharge_count <= 0 or cfg.frequent_consume_count <= 0:
        raise ConfigValidationError("frequency thresholds must be greater than 0")


class BalanceConfigStore:
    """Read-mostly holder of the balance configuration.

    The stored value is kept as the raw dict that was saved; ``get`` parses it
    once and caches the result until ``invalidate`` or ``save`` is called.
    """

    def __init__(self, raw: Optional[str] = None):
        self._lock = threading.Lock()
        self._stored: dict = {}
        self._cached: Optional[BalanceConfig] = None
        raw = raw if raw is not None else settings.balance_config_json
        if raw:
            try:
                self._stored = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("BALANCE_CONFIG is not valid JSON, using defaults")

    def get(self) -> BalanceConfig:
        with self._lock:
            if self._cached is None:
                self._cached = normalize_config(self._stored)
            return self._cached

    def save(self, data: dict) -> BalanceConfig:
        try:
            cfg = BalanceConfig(**{**self.get().model_dump(), **data})
        except ValidationError as e:
            raise ConfigValidationError(str(e)) from e
        validate_config(cfg)
        with self._lock:
            self._stored = cfg.model_dump(mode="json")
            self._cached = None
        logger.info("Balance config updated")
        return self.get()

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None
