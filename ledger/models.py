from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class EntryType(str, Enum):
    RECHARGE = "recharge"
    CONSUME = "consume"
    REFUND = "refund"
    ADJUST = "adjust"
    REWARD = "reward"
    FREEZE = "freeze"
    UNFREEZE = "unfreeze"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    FROZEN = "frozen"


class OperatorType(str, Enum):
    USER = "user"
    ADMIN = "admin"
    SYSTEM = "system"


class TransactionState(str, Enum):
    INITIATED = "initiated"
    VALIDATED = "validated"
    PROMO_RESOLVED = "promo_resolved"
    COMMITTED = "committed"
    REJECTED = "rejected"


class AlertType(str, Enum):
    LARGE_RECHARGE = "large_recharge"
    LARGE_CONSUME = "large_consume"
    FREQUENT_RECHARGE = "frequent_recharge"
    FREQUENT_CONSUME = "frequent_consume"
    ADMIN_ADJUST = "admin_adjust"


class AlertLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    PENDING = "pending"
    HANDLED = "handled"
    IGNORED = "ignored"


class Balance(BaseModel):
    user_id: UUID
    available: Decimal = Decimal("0.00")
    frozen: Decimal = Decimal("0.00")
    total_recharged: Decimal = Decimal("0.00")
    total_consumed: Decimal = Decimal("0.00")
    status: AccountStatus = AccountStatus.ACTIVE
    version: int = 0
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class LedgerEntry(BaseModel):
    id: int
    user_id: UUID
    type: EntryType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    remark: str = ""
    promo_id: Optional[int] = None
    bonus_amount: Decimal = Decimal("0.00")
    discount_amount: Decimal = Decimal("0.00")
    txn_ref: str
    idempotency_key: Optional[str] = None
    operator_type: OperatorType = OperatorType.SYSTEM
    operator_id: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @property
    def nominal_amount(self) -> Decimal:
        """Amount requested by the caller, without any promotion bonus."""
        return self.amount - self.bonus_amount


class TransactionRequest(BaseModel):
    user_id: UUID
    amount: Decimal = Field(..., description="Positive magnitude; signed for adjust")
    type: EntryType
    remark: str = ""
    idempotency_key: Optional[str] = Field(default=None, description="Suppresses duplicate submissions")
    operator_type: OperatorType = OperatorType.USER
    operator_id: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "550e8400-e29b-41d4-a716-446655440000",
            "amount": "100.00",
            "type": "recharge",
            "idempotency_key": "RC20240101120000123456",
        }
    })


class PromotionInfo(BaseModel):
    promo_id: Optional[int] = None
    promo_name: Optional[str] = None
    promo_type: Optional[str] = None
    amount: Decimal
    pay_amount: Decimal
    bonus_amount: Decimal
    discount_amount: Decimal
    credited_amount: Decimal


class AlertEvent(BaseModel):
    id: int
    user_id: UUID
    type: AlertType
    level: AlertLevel = AlertLevel.WARNING
    title: str
    content: str
    amount: Decimal = Decimal("0.00")
    related_entry_id: Optional[int] = None
    status: AlertStatus = AlertStatus.PENDING
    handled_by: Optional[str] = None
    handled_at: Optional[datetime] = None
    handle_remark: str = ""
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TransactionResult(BaseModel):
    entry: LedgerEntry
    promotion: Optional[PromotionInfo] = None
    alerts: list[AlertEvent] = Field(default_factory=list)
    states: list[TransactionState] = Field(default_factory=list)
    replayed: bool = False
    message: str


class LedgerHistoryResponse(BaseModel):
    user_id: UUID
    entries: list[LedgerEntry]
    total_count: int
    available: Decimal
    frozen: Decimal


class AccountStatusRequest(BaseModel):
    status: AccountStatus
    operator_id: Optional[str] = None


class HandleAlertRequest(BaseModel):
    status: AlertStatus = AlertStatus.HANDLED
    handled_by: Optional[str] = None
    remark: str = ""
