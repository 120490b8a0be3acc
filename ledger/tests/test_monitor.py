"""
Unit Tests for the Threshold Monitor and Balance Config

Tests cover:
1. Large amount alerts
2. Rolling-hour frequency alerts
3. Admin adjustment escalation
4. Subscriber dispatch and alert handling
5. Config caching, normalization and validation
"""

import json
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from ledger.config import BalanceConfigStore, DEFAULT_BALANCE_CONFIG
from ledger.errors import AlertNotFoundError, ConfigValidationError
from ledger.models import AlertLevel, AlertStatus, AlertType
from ledger.service import LedgerService


USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def service_with(**config) -> LedgerService:
    return LedgerService(config_store=BalanceConfigStore(raw=json.dumps(config)))


class TestAmountAlerts:
    """Large recharge and consume alerts."""

    def test_large_recharge_at_threshold(self):
        service = service_with(large_recharge_threshold="1000")

        small = service.recharge(USER_ID, Decimal("999.99"), now=NOW)
        large = service.recharge(USER_ID, Decimal("1000.00"), now=NOW)

        assert small.alerts == []
        assert [a.type for a in large.alerts] == [AlertType.LARGE_RECHARGE]
        assert large.alerts[0].related_entry_id == large.entry.id

    def test_large_consume(self):
        service = service_with(large_consume_threshold="500")
        service.recharge(USER_ID, Decimal("800.00"), now=NOW)

        result = service.consume(USER_ID, Decimal("500.00"), now=NOW)

        assert [a.type for a in result.alerts] == [AlertType.LARGE_CONSUME]
        assert result.alerts[0].amount == Decimal("500.00")


class TestFrequencyAlerts:
    """Rolling-hour counts."""

    def test_frequent_recharge_on_threshold(self):
        service = service_with(frequent_recharge_count=3)

        results = [
            service.recharge(USER_ID, Decimal("10.00"), now=NOW + timedelta(minutes=i))
            for i in range(3)
        ]

        assert results[1].alerts == []
        assert [a.type for a in results[2].alerts] == [AlertType.FREQUENT_RECHARGE]

    def test_old_recharges_leave_the_window(self):
        service = service_with(frequent_recharge_count=3)
        for i in range(2):
            service.recharge(USER_ID, Decimal("10.00"), now=NOW - timedelta(minutes=61 + i))

        result = service.recharge(USER_ID, Decimal("10.00"), now=NOW)

        assert result.alerts == []

    def test_frequent_consume(self):
        service = service_with(frequent_consume_count=2)
        service.recharge(USER_ID, Decimal("100.00"), now=NOW)

        service.consume(USER_ID, Decimal("1.00"), now=NOW)
        result = service.consume(USER_ID, Decimal("1.00"), now=NOW)

        assert [a.type for a in result.alerts] == [AlertType.FREQUENT_CONSUME]


class TestAdminAdjustAlerts:
    """Large administrator adjustments."""

    def test_warning_and_critical_levels(self):
        service = service_with(large_admin_adjust_threshold="1000")

        warning = service.adjust(USER_ID, Decimal("1000.00"), "Promo credit", operator_id="admin-1", now=NOW)
        reversal = service.adjust(USER_ID, Decimal("-1000.00"), "Reverse", operator_id="admin-1", now=NOW)
        big = service.adjust(USER_ID, Decimal("5000.00"), "Migration", operator_id="admin-1", now=NOW)

        assert warning.alerts[0].type == AlertType.ADMIN_ADJUST
        assert warning.alerts[0].level == AlertLevel.WARNING
        assert reversal.alerts[0].level == AlertLevel.WARNING
        assert big.alerts[0].level == AlertLevel.CRITICAL

    def test_small_adjust_is_silent(self):
        service = LedgerService()

        result = service.adjust(USER_ID, Decimal("10.00"), "Small fix")

        assert result.alerts == []


class TestAlertDispatch:
    """Subscribers and alert handling."""

    def test_subscribers_receive_alerts(self):
        service = service_with(large_recharge_threshold="100")
        received = []
        service.monitor.subscribe(received.append)

        service.recharge(USER_ID, Decimal("150.00"), now=NOW)

        assert [a.type for a in received] == [AlertType.LARGE_RECHARGE]

    def test_failing_subscriber_does_not_affect_transaction(self):
        service = service_with(large_recharge_threshold="100")

        def broken(event):
            raise RuntimeError("mail server down")

        service.monitor.subscribe(broken)

        result = service.recharge(USER_ID, Decimal("150.00"), now=NOW)

        assert len(result.alerts) == 1
        assert service.get_balance(USER_ID).available == Decimal("150.00")

    def test_handle_alert(self):
        service = service_with(large_recharge_threshold="100")
        alert = service.recharge(USER_ID, Decimal("150.00"), now=NOW).alerts[0]

        handled = service.monitor.handle_alert(alert.id, AlertStatus.IGNORED, "admin-1", "Known customer")
        pending, pending_total = service.monitor.list_alerts(status=AlertStatus.PENDING)

        assert handled.status == AlertStatus.IGNORED
        assert handled.handled_by == "admin-1"
        assert handled.handled_at is not None
        assert pending_total == 0
        assert service.get_stats()["pending_alerts"] == 0

    def test_unknown_alert(self):
        with pytest.raises(AlertNotFoundError):
            LedgerService().monitor.handle_alert(42)


class TestBalanceConfig:
    """Config caching and validation."""

    def test_defaults_without_stored_config(self):
        assert BalanceConfigStore(raw="").get() == DEFAULT_BALANCE_CONFIG

    def test_invalid_stored_values_fall_back_to_defaults(self):
        store = BalanceConfigStore(raw=json.dumps({
            "min_recharge_amount": "-5", "max_recharge_amount": "800", "frequent_recharge_count": 0,
        }))

        cfg = store.get()

        assert cfg.min_recharge_amount == DEFAULT_BALANCE_CONFIG.min_recharge_amount
        assert cfg.max_recharge_amount == Decimal("800")
        assert cfg.frequent_recharge_count == DEFAULT_BALANCE_CONFIG.frequent_recharge_count

    def test_get_is_cached_until_invalidated(self):
        store = BalanceConfigStore(raw="")

        first = store.get()
        assert store.get() is first

        store.invalidate()
        assert store.get() is not first

    def test_save_validates_and_takes_effect(self):
        service = LedgerService(config_store=BalanceConfigStore(raw=""))

        with pytest.raises(ConfigValidationError):
            service.config_store.save({"min_recharge_amount": "100", "max_recharge_amount": "50"})

        service.config_store.save({"min_recharge_amount": "20"})
        assert service.config_store.get().min_recharge_amount == Decimal("20")
        assert service.config_store.get().max_recharge_amount == DEFAULT_BALANCE_CONFIG.max_recharge_amount


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
