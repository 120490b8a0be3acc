"""
HTTP Tests for the Balance Ledger API

Tests cover:
1. Transactions and their error payloads
2. Balance, history and status endpoints
3. Promotion administration and recharge quotes
4. Balance config and alert handling
"""

import pytest
from decimal import Decimal
from fastapi.testclient import TestClient

from ledger.api import create_app
from ledger.config import BalanceConfigStore
from ledger.service import LedgerService


USER_ID = "550e8400-e29b-41d4-a716-446655440000"


@pytest.fixture
def service():
    return LedgerService(config_store=BalanceConfigStore(raw=""))


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


def post_transaction(client, type, amount, **extra):
    return client.post("/transactions", json={"user_id": USER_ID, "type": type, "amount": amount, **extra})


class TestTransactions:
    """POST /transactions."""

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_recharge_with_bonus(self, client, service):
        service.catalog.create({"name": "Recharge 100 get 20", "type": "bonus", "value": "20", "min_amount": "100"})

        response = post_transaction(client, "recharge", "100.00")

        assert response.status_code == 201
        body = response.json()
        assert Decimal(str(body["entry"]["amount"])) == Decimal("120.00")
        assert Decimal(str(body["promotion"]["bonus_amount"])) == Decimal("20.00")
        assert body["states"] == ["initiated", "validated", "promo_resolved", "committed"]

    def test_insufficient_balance_payload(self, client):
        response = post_transaction(client, "consume", "10.00")

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["code"] == "insufficient_balance"
        assert detail["message"] == "Insufficient balance"
        assert detail["retryable"] is False

    def test_adjust_errors_carry_raw_code(self, client):
        response = post_transaction(client, "adjust", "-10.00", remark="Correction", operator_id="admin-1")

        assert response.status_code == 400
        assert response.json()["detail"]["message"] == "insufficient_balance"

    def test_frozen_account_is_forbidden(self, client):
        client.put(f"/users/{USER_ID}/status", json={"status": "frozen"})

        response = post_transaction(client, "recharge", "10.00")

        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "account_frozen"

    def test_idempotent_replay(self, client):
        first = post_transaction(client, "recharge", "10.00", idempotency_key="RC-1")
        second = post_transaction(client, "recharge", "10.00", idempotency_key="RC-1")

        assert second.status_code == 201
        assert second.json()["replayed"] is True
        assert second.json()["entry"]["id"] == first.json()["entry"]["id"]

    def test_invalid_payload(self, client):
        response = client.post("/transactions", json={"user_id": "not-a-uuid", "type": "recharge", "amount": "1"})

        assert response.status_code == 422


class TestUserViews:
    """Balance, history and status."""

    def test_balance_and_history(self, client):
        post_transaction(client, "recharge", "50.00")
        post_transaction(client, "consume", "20.00")

        balance = client.get(f"/users/{USER_ID}/balance").json()
        history = client.get(f"/users/{USER_ID}/ledger", params={"type": "consume"}).json()

        assert Decimal(str(balance["available"])) == Decimal("30.00")
        assert balance["version"] == 2
        assert history["total_count"] == 1
        assert history["entries"][0]["type"] == "consume"
        assert Decimal(str(history["entries"][0]["amount"])) == Decimal("-20.00")

    def test_unknown_user_has_zero_balance(self, client):
        balance = client.get("/users/00000000-0000-0000-0000-000000000001/balance").json()

        assert Decimal(str(balance["available"])) == Decimal("0")

    def test_stats(self, client):
        post_transaction(client, "recharge", "50.00")

        stats = client.get("/stats").json()

        assert stats["user_count"] == 1
        assert Decimal(str(stats["total_available"])) == Decimal("50.00")


class TestPromotionEndpoints:
    """Promotion administration and quotes."""

    def test_create_toggle_and_delete(self, client):
        created = client.post("/promotions", json={"name": "Ten percent", "type": "percent", "value": "10"})
        promo_id = created.json()["id"]

        toggled = client.post(f"/promotions/{promo_id}/toggle")
        deleted = client.delete(f"/promotions/{promo_id}")

        assert created.status_code == 201
        assert toggled.json()["status"] == "disabled"
        assert deleted.status_code == 204
        assert client.get(f"/promotions/{promo_id}").status_code == 404

    def test_invalid_promotion(self, client):
        response = client.post("/promotions", json={"name": "Broken", "type": "discount", "value": "1.5"})

        assert response.status_code == 400

    def test_promotion_with_local_dates_keeps_recharges_working(self, client):
        created = client.post("/promotions", json={
            "name": "New year", "type": "bonus", "value": "5", "min_amount": "1000",
            "start_at": "2024-01-01T00:00:00",
        })

        response = post_transaction(client, "recharge", "10.00")

        assert created.status_code == 201
        assert created.json()["start_at"] == "2024-01-01T00:00:00+00:00"
        assert response.status_code == 201
        assert response.json()["entry"]["promo_id"] is None

    def test_update_ignores_null_for_required_fields(self, client):
        promo_id = client.post("/promotions", json={"name": "Bonus", "type": "bonus", "value": "5"}).json()["id"]

        renamed = client.put(f"/promotions/{promo_id}", json={"name": None})
        revalued = client.put(f"/promotions/{promo_id}", json={"value": None, "priority": 3})

        assert renamed.status_code == 200
        assert renamed.json()["name"] == "Bonus"
        assert revalued.status_code == 200
        assert revalued.json()["value"] == "5"
        assert revalued.json()["priority"] == 3

    def test_update_can_clear_window(self, client):
        promo_id = client.post("/promotions", json={
            "name": "Bonus", "type": "bonus", "value": "5", "end_at": "2030-01-01T00:00:00Z",
        }).json()["id"]

        response = client.put(f"/promotions/{promo_id}", json={"end_at": None})

        assert response.status_code == 200
        assert response.json()["end_at"] is None

    def test_quote(self, client):
        client.post("/promotions", json={"name": "Bonus", "type": "bonus", "value": "5", "priority": 1})
        client.post("/promotions", json={"name": "Percent", "type": "percent", "value": "20", "priority": 2})

        quote = client.get("/recharge/quote", params={"user_id": USER_ID, "amount": "100"}).json()

        assert quote["best"]["promo_name"] == "Percent"
        assert Decimal(quote["best"]["bonus_amount"]) == Decimal("20.00")
        assert len(quote["options"]) == 2

    def test_usages_after_recharge(self, client):
        promo_id = client.post("/promotions", json={"name": "Bonus", "type": "bonus", "value": "5"}).json()["id"]
        post_transaction(client, "recharge", "10.00")

        usages = client.get(f"/promotions/{promo_id}/usages").json()
        user_usages = client.get(f"/users/{USER_ID}/promotion-usages").json()

        assert usages["total"] == 1
        assert user_usages["items"][0]["promo_id"] == promo_id


class TestConfigAndAlerts:
    """Balance config and alert handling."""

    def test_config_round_trip(self, client):
        saved = client.put("/config/balance", json={"large_recharge_threshold": "100"})
        loaded = client.get("/config/balance").json()

        assert saved.status_code == 200
        assert Decimal(loaded["large_recharge_threshold"]) == Decimal("100")

    def test_invalid_config(self, client):
        response = client.put("/config/balance", json={"min_recharge_amount": "10", "max_recharge_amount": "5"})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_config"

    def test_alert_lifecycle(self, client):
        client.put("/config/balance", json={"large_recharge_threshold": "100"})
        post_transaction(client, "recharge", "150.00")

        alerts = client.get("/alerts", params={"status": "pending"}).json()
        alert_id = alerts["items"][0]["id"]
        handled = client.post(f"/alerts/{alert_id}/handle", json={"status": "handled", "handled_by": "admin-1"})

        assert alerts["total"] == 1
        assert handled.json()["status"] == "handled"
        assert client.get("/alerts", params={"status": "pending"}).json()["total"] == 0

    def test_unknown_alert(self, client):
        response = client.post("/alerts/99/handle", json={})

        assert response.status_code == 404


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
