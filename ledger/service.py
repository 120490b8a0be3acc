import logging
import threading
from datetime import datetime
from decimal import Decimal
from functools import partial
from typing import Optional
from uuid import UUID

from promotions import (
    PromotionCatalog,
    PromotionExhausted,
    PromotionQuote,
    PromotionSelector,
    PromotionUsage,
)
from promotions.models import quantize

from .config import BalanceConfig, BalanceConfigStore
from .errors import (
    AboveMaximum,
    AccountFrozen,
    BalanceCapExceeded,
    BelowMinimum,
    DailyCapExceeded,
    IdempotencyConflictError,
    InvalidAmount,
    LedgerServiceError,
)
from .models import (
    AccountStatus,
    Balance,
    EntryType,
    LedgerEntry,
    LedgerHistoryResponse,
    OperatorType,
    PromotionInfo,
    TransactionRequest,
    TransactionResult,
    TransactionState,
)
from .monitor import ThresholdMonitor
from .store import LedgerStore, new_txn_ref, utcnow

logger = logging.getLogger(__name__)

SIGNED_DEBITS = {EntryType.CONSUME, EntryType.FREEZE}
CAPPED_CREDITS = {EntryType.RECHARGE, EntryType.REWARD, EntryType.ADJUST}


class LedgerService:
    """Runs every balance-changing operation as one atomic attempt.

    An attempt moves through initiated, validated, promo_resolved (recharges
    only) and ends committed or rejected. Rejections raise the specific
    ``LedgerServiceError`` and leave no trace in the store or the catalog.
    """

    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        catalog: Optional[PromotionCatalog] = None,
        config_store: Optional[BalanceConfigStore] = None,
        monitor: Optional[ThresholdMonitor] = None,
    ):
        self.store = store or LedgerStore()
        self.catalog = catalog or PromotionCatalog()
        self.selector = PromotionSelector(self.catalog)
        self.config_store = config_store or BalanceConfigStore()
        self.monitor = monitor or ThresholdMonitor(self.store, self.config_store)
        # key -> (user_id, entry type, entry id or None while the attempt is in flight)
        self._idempotency_index: dict[str, tuple[UUID, EntryType, Optional[int]]] = {}
        self._idempotency_lock = threading.Lock()

    def process_transaction(self, request: TransactionRequest, now: Optional[datetime] = None) -> TransactionResult:
        now = now or utcnow()
        states = [TransactionState.INITIATED]
        quote: Optional[PromotionQuote] = None
        try:
            with self.store.user_lock(request.user_id):
                existing = self._check_idempotency(request)
                if existing:
                    return TransactionResult(
                        entry=existing,
                        states=[TransactionState.COMMITTED],
                        replayed=True,
                        message="Transaction already processed (idempotent return)",
                    )

                try:
                    amount = self._signed_amount(request)
                    balance = self.store.get_balance(request.user_id)
                    self._validate(request.type, amount, balance, self.config_store.get(), now)
                    states.append(TransactionState.VALIDATED)

                    if request.type == EntryType.RECHARGE:
                        entry, quote = self._commit_recharge(request, amount, balance, now)
                        states.append(TransactionState.PROMO_RESOLVED)
                    else:
                        entry = self.store.apply_delta(
                            request.user_id, amount, request.type, request.remark,
                            txn_ref=new_txn_ref(),
                            operator_type=self._operator_type(request),
                            operator_id=request.operator_id,
                            idempotency_key=request.idempotency_key,
                            expected_version=balance.version,
                            now=now,
                        )
                except Exception:
                    self._release_idempotency(request)
                    raise
                states.append(TransactionState.COMMITTED)
                self._remember_idempotency(request, entry)
        except LedgerServiceError as e:
            states.append(TransactionState.REJECTED)
            logger.warning(
                "Rejected %s of %s for user %s: %s",
                request.type.value, request.amount, request.user_id, e.code,
            )
            raise

        logger.info(
            "Committed %s entry %s for user %s: %s -> %s",
            entry.type.value, entry.id, entry.user_id, entry.balance_before, entry.balance_after,
        )
        alerts = self.monitor.evaluate(entry, now)
        return TransactionResult(
            entry=entry,
            promotion=self._promotion_info(quote),
            alerts=alerts,
            states=states,
            message=f"{entry.type.value.capitalize()} committed",
        )

    # convenience entry points for the collaborating workflows

    def recharge(self, user_id: UUID, amount: Decimal, idempotency_key: Optional[str] = None,
                 remark: str = "", now: Optional[datetime] = None) -> TransactionResult:
        return self.process_transaction(TransactionRequest(
            user_id=user_id, amount=amount, type=EntryType.RECHARGE, remark=remark,
            idempotency_key=idempotency_key, operator_type=OperatorType.SYSTEM,
        ), now)

    def consume(self, user_id: UUID, amount: Decimal, remark: str = "",
                idempotency_key: Optional[str] = None, now: Optional[datetime] = None) -> TransactionResult:
        return self.process_transaction(TransactionRequest(
            user_id=user_id, amount=amount, type=EntryType.CONSUME, remark=remark,
            idempotency_key=idempotency_key,
        ), now)

    def refund(self, user_id: UUID, amount: Decimal, remark: str = "",
               idempotency_key: Optional[str] = None, now: Optional[datetime] = None) -> TransactionResult:
        return self.process_transaction(TransactionRequest(
            user_id=user_id, amount=amount, type=EntryType.REFUND, remark=remark,
            idempotency_key=idempotency_key, operator_type=OperatorType.SYSTEM,
        ), now)

    def adjust(self, user_id: UUID, amount: Decimal, remark: str, operator_id: Optional[str] = None,
               now: Optional[datetime] = None) -> TransactionResult:
        return self.process_transaction(TransactionRequest(
            user_id=user_id, amount=amount, type=EntryType.ADJUST, remark=remark,
            operator_type=OperatorType.ADMIN, operator_id=operator_id,
        ), now)

    def reward(self, user_id: UUID, amount: Decimal, remark: str = "",
               operator_id: Optional[str] = None, now: Optional[datetime] = None) -> TransactionResult:
        return self.process_transaction(TransactionRequest(
            user_id=user_id, amount=amount, type=EntryType.REWARD, remark=remark,
            operator_type=OperatorType.ADMIN, operator_id=operator_id,
        ), now)

    def freeze(self, user_id: UUID, amount: Decimal, remark: str = "",
               now: Optional[datetime] = None) -> TransactionResult:
        return self.process_transaction(TransactionRequest(
            user_id=user_id, amount=amount, type=EntryType.FREEZE, remark=remark,
        ), now)

    def unfreeze(self, user_id: UUID, amount: Decimal, remark: str = "",
                 now: Optional[datetime] = None) -> TransactionResult:
        return self.process_transaction(TransactionRequest(
            user_id=user_id, amount=amount, type=EntryType.UNFREEZE, remark=remark,
        ), now)

    # read-only views

    def get_balance(self, user_id: UUID) -> Balance:
        return self.store.get_balance(user_id)

    def get_ledger_history(self, user_id: UUID, limit: int = 50, offset: int = 0,
                           entry_type: Optional[EntryType] = None) -> LedgerHistoryResponse:
        entries, total = self.store.get_history(user_id, limit, offset, entry_type)
        balance = self.store.get_balance(user_id)
        return LedgerHistoryResponse(
            user_id=user_id,
            entries=entries,
            total_count=total,
            available=balance.available,
            frozen=balance.frozen,
        )

    def set_account_status(self, user_id: UUID, status: AccountStatus) -> Balance:
        return self.store.set_status(user_id, status)

    def quote_recharge(self, user_id: UUID, amount: Decimal,
                       now: Optional[datetime] = None) -> tuple[PromotionQuote, list[PromotionQuote]]:
        """Return the promotion a recharge would get right now, plus every qualifying option."""
        now = now or utcnow()
        amount = quantize(amount)
        if amount <= 0:
            raise InvalidAmount()
        return self.selector.select(user_id, amount, now), self.selector.preview(user_id, amount, now)

    def get_stats(self, now: Optional[datetime] = None) -> dict:
        stats = self.store.stats(now)
        stats["pending_alerts"] = self.monitor.pending_count()
        return stats

    # internals

    def _commit_recharge(self, request: TransactionRequest, amount: Decimal, balance: Balance,
                         now: datetime) -> tuple[LedgerEntry, PromotionQuote]:
        txn_ref = new_txn_ref()
        excluded: set[int] = set()
        while True:
            quote = self.selector.select(request.user_id, amount, now, exclude=excluded)
            claim = None
            if quote.rule is not None:
                claim = partial(self.catalog.claim, PromotionUsage(
                    promo_id=quote.rule.id,
                    user_id=request.user_id,
                    recharge_txn_ref=txn_ref,
                    amount=amount,
                    bonus_amount=quote.bonus_amount,
                    discount_amount=quote.discount_amount,
                    created_at=now,
                ))
            try:
                entry = self.store.apply_delta(
                    request.user_id, quote.credited_amount, EntryType.RECHARGE,
                    request.remark or self._recharge_remark(quote),
                    quote.promo_id,
                    txn_ref=txn_ref,
                    bonus_amount=quote.bonus_amount,
                    discount_amount=quote.discount_amount,
                    operator_type=self._operator_type(request),
                    operator_id=request.operator_id,
                    idempotency_key=request.idempotency_key,
                    expected_version=balance.version,
                    promo_claim=claim,
                    now=now,
                )
                return entry, quote
            except PromotionExhausted as e:
                logger.info("Promotion %s unavailable for user %s, reselecting: %s",
                            quote.promo_id, request.user_id, e)
                excluded.add(quote.rule.id)

    def _validate(self, entry_type: EntryType, amount: Decimal, balance: Balance,
                  cfg: BalanceConfig, now: datetime) -> None:
        if balance.status == AccountStatus.FROZEN and entry_type != EntryType.ADJUST:
            raise AccountFrozen()

        if entry_type == EntryType.RECHARGE:
            if amount < cfg.min_recharge_amount:
                raise BelowMinimum(cfg.min_recharge_amount)
            if amount > cfg.max_recharge_amount:
                raise AboveMaximum(cfg.max_recharge_amount)
            today = now.replace(hour=0, minute=0, second=0, microsecond=0)
            today_total = self.store.sum_nominal(balance.user_id, EntryType.RECHARGE, today)
            if today_total + amount > cfg.max_daily_recharge:
                raise DailyCapExceeded(cfg.max_daily_recharge, today_total)

        if entry_type in CAPPED_CREDITS and amount > 0:
            if balance.available + amount > cfg.max_balance_limit:
                raise BalanceCapExceeded(cfg.max_balance_limit, balance.available)

    @staticmethod
    def _signed_amount(request: TransactionRequest) -> Decimal:
        amount = quantize(request.amount)
        if amount == 0:
            raise InvalidAmount()
        if request.type in SIGNED_DEBITS:
            return -abs(amount)
        if request.type == EntryType.ADJUST:
            return amount
        if amount < 0:
            raise InvalidAmount(f"{request.type.value} amount must be positive")
        return amount

    @staticmethod
    def _operator_type(request: TransactionRequest) -> OperatorType:
        if request.type == EntryType.ADJUST and request.operator_type == OperatorType.USER:
            return OperatorType.ADMIN
        return request.operator_type

    @staticmethod
    def _recharge_remark(quote: PromotionQuote) -> str:
        if quote.bonus_amount > 0:
            return f"Online recharge (incl. bonus {quote.bonus_amount:.2f})"
        return "Online recharge"

    @staticmethod
    def _promotion_info(quote: Optional[PromotionQuote]) -> Optional[PromotionInfo]:
        if quote is None:
            return None
        return PromotionInfo(**quote.to_dict())

    def _check_idempotency(self, request: TransactionRequest) -> Optional[LedgerEntry]:
        """Return the entry already committed under the key, or reserve the key for this attempt.

        The reservation is made under the index lock, so two attempts from
        different users can never both own one key.
        """
        key = request.idempotency_key
        if not key:
            return None
        with self._idempotency_lock:
            record = self._idempotency_index.get(key)
            if record is None:
                self._idempotency_index[key] = (request.user_id, request.type, None)
                return None
        user_id, entry_type, entry_id = record
        if user_id != request.user_id or entry_type != request.type or entry_id is None:
            raise IdempotencyConflictError(f"Idempotency key {key!r} belongs to another transaction")
        return self.store.get_entry(entry_id)

    def _remember_idempotency(self, request: TransactionRequest, entry: LedgerEntry) -> None:
        if not request.idempotency_key:
            return
        with self._idempotency_lock:
            self._idempotency_index[request.idempotency_key] = (request.user_id, request.type, entry.id)

    def _release_idempotency(self, request: TransactionRequest) -> None:
        key = request.idempotency_key
        if not key:
            return
        with self._idempotency_lock:
            record = self._idempotency_index.get(key)
            if record == (request.user_id, request.type, None):
                del self._idempotency_index[key]
