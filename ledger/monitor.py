import itertools
import logging
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from .config import BalanceConfigStore
from .errors import AlertNotFoundError
from .models import AlertEvent, AlertLevel, AlertStatus, AlertType, EntryType, LedgerEntry
from .store import LedgerStore

logger = logging.getLogger(__name__)

FREQUENCY_WINDOW = timedelta(minutes=60)
CRITICAL_ADJUST_MULTIPLIER = 5

AlertHandler = Callable[[AlertEvent], None]


class ThresholdMonitor:
    """Observes committed entries and raises advisory alerts.

    Alerts are kept in an in-memory log for the admin views and handed to
    every subscribed handler. Nothing here can block or undo a transaction.
    """

    def __init__(self, store: LedgerStore, config_store: BalanceConfigStore):
        self.store = store
        self.config_store = config_store
        self._handlers: list[AlertHandler] = []
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.alerts: dict[int, AlertEvent] = {}

    def subscribe(self, handler: AlertHandler) -> None:
        self._handlers.append(handler)

    def evaluate(self, entry: LedgerEntry, now: Optional[datetime] = None) -> list[AlertEvent]:
        cfg = self.config_store.get()
        now = now or entry.created_at
        amount = abs(entry.amount)
        events = []

        if entry.type == EntryType.RECHARGE:
            if amount >= cfg.large_recharge_threshold:
                events.append(self._new_alert(
                    entry, AlertType.LARGE_RECHARGE, "Large recharge",
                    f"User {entry.user_id} recharged {amount:.2f} (txn {entry.txn_ref})", amount,
                ))
            events.extend(self._check_frequency(
                entry, now, cfg.frequent_recharge_count, AlertType.FREQUENT_RECHARGE, "recharge",
            ))
        elif entry.type == EntryType.CONSUME:
            if amount >= cfg.large_consume_threshold:
                events.append(self._new_alert(
                    entry, AlertType.LARGE_CONSUME, "Large consumption",
                    f"User {entry.user_id} spent {amount:.2f} (txn {entry.txn_ref})", amount,
                ))
            events.extend(self._check_frequency(
                entry, now, cfg.frequent_consume_count, AlertType.FREQUENT_CONSUME, "consume",
            ))
        elif entry.type == EntryType.ADJUST and amount >= cfg.large_admin_adjust_threshold:
            level = AlertLevel.WARNING
            if amount >= cfg.large_admin_adjust_threshold * CRITICAL_ADJUST_MULTIPLIER:
                level = AlertLevel.CRITICAL
            events.append(self._new_alert(
                entry, AlertType.ADMIN_ADJUST, "Large admin adjustment",
                f"Admin {entry.operator_id or 'unknown'} adjusted user {entry.user_id} "
                f"by {entry.amount:.2f}, remark: {entry.remark}",
                entry.amount, level,
            ))

        for event in events:
            self._publish(event)
        return events

    def _check_frequency(
        self, entry: LedgerEntry, now: datetime, threshold: int, alert_type: AlertType, label: str
    ) -> list[AlertEvent]:
        count = self.store.count_entries(entry.user_id, entry.type, now - FREQUENCY_WINDOW)
        if count < threshold:
            return []
        return [self._new_alert(
            entry, alert_type, f"Frequent {label}",
            f"User {entry.user_id} made {count} {label} transactions within 1 hour "
            f"(threshold {threshold})",
            Decimal("0.00"),
        )]

    def _new_alert(
        self, entry: LedgerEntry, alert_type: AlertType, title: str, content: str,
        amount: Decimal, level: AlertLevel = AlertLevel.WARNING,
    ) -> AlertEvent:
        event = AlertEvent(
            id=next(self._ids),
            user_id=entry.user_id,
            type=alert_type,
            level=level,
            title=title,
            content=content,
            amount=amount,
            related_entry_id=entry.id,
            created_at=entry.created_at,
        )
        with self._lock:
            self.alerts[event.id] = event
        return event

    def _publish(self, event: AlertEvent) -> None:
        logger.warning("Balance alert %s [%s] %s", event.type.value, event.level.value, event.content)
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Alert handler %r failed for alert %s", handler, event.id)

    # admin views

    def list_alerts(
        self,
        page: int = 1,
        page_size: int = 20,
        alert_type: Optional[AlertType] = None,
        level: Optional[AlertLevel] = None,
        status: Optional[AlertStatus] = None,
        user_id: Optional[UUID] = None,
    ) -> tuple[list[AlertEvent], int]:
        with self._lock:
            alerts = sorted(self.alerts.values(), key=lambda a: a.id, reverse=True)
        if alert_type is not None:
            alerts = [a for a in alerts if a.type == alert_type]
        if level is not None:
            alerts = [a for a in alerts if a.level == level]
        if status is not None:
            alerts = [a for a in alerts if a.status == status]
        if user_id is not None:
            alerts = [a for a in alerts if a.user_id == user_id]
        offset = (max(page, 1) - 1) * page_size
        return alerts[offset:offset + page_size], len(alerts)

    def handle_alert(
        self, alert_id: int, status: AlertStatus = AlertStatus.HANDLED,
        handled_by: Optional[str] = None, remark: str = "",
    ) -> AlertEvent:
        with self._lock:
            alert = self.alerts.get(alert_id)
            if alert is None:
                raise AlertNotFoundError(f"Alert {alert_id} not found")
            updated = alert.model_copy(update={
                "status": status,
                "handled_by": handled_by,
                "handled_at": datetime.now(timezone.utc),
                "handle_remark": remark,
            })
            self.alerts[alert_id] = updated
        return updated

    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for a in self.alerts.values() if a.status == AlertStatus.PENDING)
