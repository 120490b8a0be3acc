import itertools
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterator, Optional
from uuid import UUID, uuid4

from promotions.models import quantize

from .errors import (
    AccountFrozen,
    ConcurrentModification,
    InsufficientBalance,
    InsufficientFrozenBalance,
    InvalidAmount,
    TransactionTimeout,
)
from .models import AccountStatus, Balance, EntryType, LedgerEntry, OperatorType
from .settings import settings

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

CREDIT_TYPES = {EntryType.RECHARGE, EntryType.REFUND, EntryType.REWARD, EntryType.UNFREEZE}
DEBIT_TYPES = {EntryType.CONSUME, EntryType.FREEZE}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_txn_ref() -> str:
    return f"TX{utcnow():%Y%m%d%H%M%S}{uuid4().hex[:12].upper()}"


class LedgerStore:
    """In-memory balance rows plus the append-only ledger.

    Writes for one user are serialized by a per-user re-entrant lock, so
    different users never wait on each other. Entries are frozen models and
    the store offers no way to change or remove one once appended.
    """

    def __init__(self, lock_timeout: Optional[float] = None):
        self.lock_timeout = settings.transaction_timeout if lock_timeout is None else lock_timeout
        self._balances: dict[UUID, dict] = {}
        self._entries: dict[int, LedgerEntry] = {}
        self._user_entries: dict[UUID, list[int]] = {}
        self._ids = itertools.count(1)
        self._locks_guard = threading.Lock()
        self._user_locks: dict[UUID, threading.RLock] = {}

    # locking

    def _lock_for(self, user_id: UUID) -> threading.RLock:
        with self._locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = threading.RLock()
            return lock

    @contextmanager
    def user_lock(self, user_id: UUID, timeout: Optional[float] = None) -> Iterator[None]:
        lock = self._lock_for(user_id)
        if not lock.acquire(timeout=self.lock_timeout if timeout is None else timeout):
            logger.warning("Timed out waiting for balance lock of user %s", user_id)
            raise TransactionTimeout()
        try:
            yield
        finally:
            lock.release()

    # writes

    def apply_delta(
        self,
        user_id: UUID,
        amount: Decimal,
        entry_type: EntryType,
        remark: str = "",
        promo_id: Optional[int] = None,
        *,
        txn_ref: Optional[str] = None,
        bonus_amount: Decimal = ZERO,
        discount_amount: Decimal = ZERO,
        operator_type: OperatorType = OperatorType.SYSTEM,
        operator_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        expected_version: Optional[int] = None,
        promo_claim: Optional[Callable[[], object]] = None,
        now: Optional[datetime] = None,
    ) -> LedgerEntry:
        """Apply a signed ``amount`` to the user's available balance and log it.

        ``promo_claim`` runs after every balance check and before any write;
        if it raises, the exception propagates and nothing is persisted.
        """
        amount = quantize(amount)
        self._check_sign(amount, entry_type)
        now = now or utcnow()

        with self.user_lock(user_id):
            row = self._balances.get(user_id) or self._empty_row(user_id)
            if expected_version is not None and row["version"] != expected_version:
                raise ConcurrentModification()
            if row["status"] == AccountStatus.FROZEN and entry_type != EntryType.ADJUST:
                raise AccountFrozen()

            before = row["available"]
            after = before + amount
            frozen = row["frozen"]
            if entry_type == EntryType.FREEZE:
                frozen = frozen - amount
            elif entry_type == EntryType.UNFREEZE:
                frozen = frozen - amount
                if frozen < 0:
                    raise InsufficientFrozenBalance()
            if after < 0:
                raise InsufficientBalance()

            if promo_claim is not None:
                promo_claim()

            updated = dict(row)
            updated.update(available=after, frozen=frozen, version=row["version"] + 1, updated_at=now)
            if entry_type == EntryType.RECHARGE:
                updated["total_recharged"] = row["total_recharged"] + amount
            elif entry_type == EntryType.CONSUME:
                updated["total_consumed"] = row["total_consumed"] - amount

            entry = LedgerEntry(
                id=next(self._ids),
                user_id=user_id,
                type=entry_type,
                amount=amount,
                balance_before=before,
                balance_after=after,
                remark=remark,
                promo_id=promo_id,
                bonus_amount=quantize(bonus_amount),
                discount_amount=quantize(discount_amount),
                txn_ref=txn_ref or new_txn_ref(),
                idempotency_key=idempotency_key,
                operator_type=operator_type,
                operator_id=operator_id,
                created_at=now,
            )
            self._balances[user_id] = updated
            self._entries[entry.id] = entry
            self._user_entries.setdefault(user_id, []).append(entry.id)

        logger.debug("Ledger entry %s: user=%s type=%s amount=%s", entry.id, user_id, entry_type.value, amount)
        return entry

    def set_status(self, user_id: UUID, status: AccountStatus, now: Optional[datetime] = None) -> Balance:
        with self.user_lock(user_id):
            row = dict(self._balances.get(user_id) or self._empty_row(user_id))
            row.update(status=status, version=row["version"] + 1, updated_at=now or utcnow())
            self._balances[user_id] = row
        logger.info("Balance account of user %s set to %s", user_id, status.value)
        return Balance(**row)

    # reads

    def get_balance(self, user_id: UUID) -> Balance:
        with self.user_lock(user_id):
            row = self._balances.get(user_id) or self._empty_row(user_id)
            return Balance(**row)

    def get_entry(self, entry_id: int) -> Optional[LedgerEntry]:
        return self._entries.get(entry_id)

    def entries_for(
        self, user_id: UUID, entry_type: Optional[EntryType] = None, since: Optional[datetime] = None
    ) -> list[LedgerEntry]:
        """Entries of one user in commit order."""
        entries = [self._entries[i] for i in list(self._user_entries.get(user_id, ()))]
        if entry_type is not None:
            entries = [e for e in entries if e.type == entry_type]
        if since is not None:
            entries = [e for e in entries if e.created_at >= since]
        return entries

    def get_history(
        self, user_id: UUID, limit: int = 50, offset: int = 0, entry_type: Optional[EntryType] = None
    ) -> tuple[list[LedgerEntry], int]:
        entries = self.entries_for(user_id, entry_type)
        entries.reverse()
        return entries[offset:offset + limit], len(entries)

    def count_entries(self, user_id: UUID, entry_type: EntryType, since: datetime) -> int:
        return len(self.entries_for(user_id, entry_type, since))

    def sum_nominal(self, user_id: UUID, entry_type: EntryType, since: datetime) -> Decimal:
        return sum((e.nominal_amount for e in self.entries_for(user_id, entry_type, since)), ZERO)

    def list_balances(self, page: int = 1, page_size: int = 20) -> tuple[list[Balance], int]:
        rows = sorted(list(self._balances.values()), key=lambda r: r["available"], reverse=True)
        offset = (max(page, 1) - 1) * page_size
        return [Balance(**r) for r in rows[offset:offset + page_size]], len(rows)

    def stats(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        rows = list(self._balances.values())
        today_recharge = sum(
            (e.nominal_amount for e in list(self._entries.values())
             if e.type == EntryType.RECHARGE and e.created_at >= today),
            ZERO,
        )
        return {
            "total_available": sum((r["available"] for r in rows), ZERO),
            "total_frozen": sum((r["frozen"] for r in rows), ZERO),
            "total_recharged": sum((r["total_recharged"] for r in rows), ZERO),
            "total_consumed": sum((r["total_consumed"] for r in rows), ZERO),
            "user_count": len(rows),
            "today_recharge": today_recharge,
        }

    @staticmethod
    def _empty_row(user_id: UUID) -> dict:
        return {
            "user_id": user_id, "available": ZERO, "frozen": ZERO,
            "total_recharged": ZERO, "total_consumed": ZERO,
            "status": AccountStatus.ACTIVE, "version": 0, "updated_at": None,
        }

    @staticmethod
    def _check_sign(amount: Decimal, entry_type: EntryType) -> None:
        if entry_type in CREDIT_TYPES and amount <= 0:
            raise InvalidAmount(f"{entry_type.value} amount must be positive")
        if entry_type in DEBIT_TYPES and amount >= 0:
            raise InvalidAmount(f"{entry_type.value} amount must be negative")
        if entry_type == EntryType.ADJUST and amount == 0:
            raise InvalidAmount("Adjustment amount cannot be zero")
