from decimal import Decimal
from typing import Optional


class LedgerServiceError(Exception):
    """Base class for every error a ledger operation can reject with.

    ``code`` is stable and machine readable, ``message`` is meant for end
    users and ``retryable`` tells the caller whether resubmitting the same
    request may succeed.
    """

    code = "ledger_error"
    retryable = False
    default_message = "The balance operation could not be completed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidAmount(LedgerServiceError):
    code = "invalid_amount"
    default_message = "Amount must be greater than zero"


class BelowMinimum(LedgerServiceError):
    code = "below_minimum"

    def __init__(self, minimum: Decimal):
        self.minimum = minimum
        super().__init__(f"Recharge amount cannot be lower than {minimum:.2f}")


class AboveMaximum(LedgerServiceError):
    code = "above_maximum"

    def __init__(self, maximum: Decimal):
        self.maximum = maximum
        super().__init__(f"A single recharge cannot exceed {maximum:.2f}")


class DailyCapExceeded(LedgerServiceError):
    code = "daily_cap_exceeded"

    def __init__(self, cap: Decimal, today_total: Decimal):
        self.cap = cap
        self.today_total = today_total
        super().__init__(
            f"Today's recharges would exceed the daily limit of {cap:.2f} "
            f"(already recharged {today_total:.2f})"
        )


class BalanceCapExceeded(LedgerServiceError):
    code = "balance_cap_exceeded"

    def __init__(self, cap: Decimal, available: Decimal):
        self.cap = cap
        self.available = available
        super().__init__(
            f"Balance would exceed the limit of {cap:.2f} (current balance {available:.2f})"
        )


class InsufficientBalance(LedgerServiceError):
    code = "insufficient_balance"
    default_message = "Insufficient balance"


class InsufficientFrozenBalance(InsufficientBalance):
    code = "insufficient_frozen_balance"
    default_message = "Insufficient frozen balance"


class AccountFrozen(LedgerServiceError):
    code = "account_frozen"
    default_message = "This balance account is frozen"


class TransactionTimeout(LedgerServiceError):
    code = "timeout"
    retryable = True
    default_message = "The balance is busy, please try again"


class ConcurrentModification(LedgerServiceError):
    code = "concurrent_modification"
    retryable = True
    default_message = "The balance changed while processing, please try again"


class IdempotencyConflictError(LedgerServiceError):
    code = "idempotency_conflict"
    default_message = "Idempotency key was already used for a different transaction"


class AlertNotFoundError(LedgerServiceError):
    code = "alert_not_found"
    default_message = "Alert not found"


class ConfigValidationError(LedgerServiceError):
    code = "invalid_config"
    default_message = "Invalid balance configuration"
