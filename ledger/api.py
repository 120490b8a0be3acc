import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from promotions import PromoStatus, PromoType, PromotionError, PromotionNotFoundError

from .errors import (
    AccountFrozen,
    AlertNotFoundError,
    ConcurrentModification,
    IdempotencyConflictError,
    LedgerServiceError,
    TransactionTimeout,
)
from .models import (
    AccountStatusRequest,
    AlertEvent,
    AlertLevel,
    AlertStatus,
    AlertType,
    Balance,
    EntryType,
    HandleAlertRequest,
    LedgerHistoryResponse,
    TransactionRequest,
    TransactionResult,
)
from .service import LedgerService
from .settings import settings

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    TransactionTimeout: status.HTTP_503_SERVICE_UNAVAILABLE,
    ConcurrentModification: status.HTTP_409_CONFLICT,
    IdempotencyConflictError: status.HTTP_409_CONFLICT,
    AccountFrozen: status.HTTP_403_FORBIDDEN,
    AlertNotFoundError: status.HTTP_404_NOT_FOUND,
}


# fields an update may set back to null
CLEARABLE_PROMOTION_FIELDS = {"start_at", "end_at"}


class PromotionPayload(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[PromoType] = None
    value: Optional[Decimal] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    max_bonus: Optional[Decimal] = None
    priority: Optional[int] = None
    per_user_limit: Optional[int] = None
    total_limit: Optional[int] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    status: Optional[PromoStatus] = None


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def ledger_http_error(e: LedgerServiceError, raw: bool = False) -> HTTPException:
    """Admin callers get the raw error code, end-user workflows the readable message."""
    code = next((c for t, c in ERROR_STATUS.items() if isinstance(e, t)), status.HTTP_400_BAD_REQUEST)
    return HTTPException(
        status_code=code,
        detail={"code": e.code, "message": e.code if raw else e.message, "retryable": e.retryable},
    )


def create_app(service: Optional[LedgerService] = None, root_path: str = "") -> FastAPI:
    configure_logging()
    ledger_service = service or LedgerService()

    app = FastAPI(
        title="Balance Ledger API",
        description="Per-user balance ledger with recharge promotions and alert thresholds",
        version="1.0.0",
        root_path=root_path,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
    )
    app.state.ledger_service = ledger_service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.resolved_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "balance-ledger", "currency": settings.currency}

    @app.post("/transactions", response_model=TransactionResult, status_code=status.HTTP_201_CREATED,
              tags=["Transactions"])
    def process_transaction(request: TransactionRequest) -> TransactionResult:
        try:
            return ledger_service.process_transaction(request)
        except LedgerServiceError as e:
            raise ledger_http_error(e, raw=request.type == EntryType.ADJUST)

    @app.get("/users/{user_id}/balance", response_model=Balance, tags=["Users"])
    def get_user_balance(user_id: UUID) -> Balance:
        try:
            return ledger_service.get_balance(user_id)
        except LedgerServiceError as e:
            raise ledger_http_error(e)

    @app.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
    def get_user_ledger(user_id: UUID, limit: int = 50, offset: int = 0,
                        type: Optional[EntryType] = None) -> LedgerHistoryResponse:
        try:
            return ledger_service.get_ledger_history(user_id, limit, offset, type)
        except LedgerServiceError as e:
            raise ledger_http_error(e)

    @app.put("/users/{user_id}/status", response_model=Balance, tags=["Users"])
    def set_user_status(user_id: UUID, request: AccountStatusRequest) -> Balance:
        try:
            return ledger_service.set_account_status(user_id, request.status)
        except LedgerServiceError as e:
            raise ledger_http_error(e, raw=True)

    @app.get("/users/{user_id}/promotion-usages", tags=["Users"])
    def get_user_promotion_usages(user_id: UUID, page: int = 1, page_size: int = 20):
        usages, total = ledger_service.catalog.list_usages(user_id=user_id, page=page, page_size=page_size)
        return {"items": [u.to_dict() for u in usages], "total": total}

    @app.get("/recharge/quote", tags=["Transactions"])
    def quote_recharge(user_id: UUID, amount: Decimal):
        try:
            best, options = ledger_service.quote_recharge(user_id, amount)
        except LedgerServiceError as e:
            raise ledger_http_error(e)
        return {"best": best.to_dict(), "options": [q.to_dict() for q in options]}

    @app.get("/balances", tags=["Admin"])
    def list_balances(page: int = 1, page_size: int = 20):
        balances, total = ledger_service.store.list_balances(page, page_size)
        return {"items": balances, "total": total}

    @app.get("/stats", tags=["Admin"])
    def get_stats():
        return ledger_service.get_stats()

    @app.get("/promotions", tags=["Promotions"])
    def list_promotions(page: int = 1, page_size: int = 20, status: Optional[PromoStatus] = None):
        rules, total = ledger_service.catalog.list_promotions(page, page_size, status)
        return {"items": [r.to_dict() for r in rules], "total": total}

    @app.post("/promotions", status_code=status.HTTP_201_CREATED, tags=["Promotions"])
    def create_promotion(payload: PromotionPayload):
        try:
            return ledger_service.catalog.create(payload.model_dump(exclude_none=True)).to_dict()
        except PromotionError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.get("/promotions/stats", tags=["Promotions"])
    def get_promotion_stats():
        return ledger_service.catalog.stats()

    @app.get("/promotions/{promo_id}", tags=["Promotions"])
    def get_promotion(promo_id: int):
        try:
            return ledger_service.catalog.get(promo_id).to_dict()
        except PromotionNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @app.put("/promotions/{promo_id}", tags=["Promotions"])
    def update_promotion(promo_id: int, payload: PromotionPayload):
        try:
            changes = {
                k: v for k, v in payload.model_dump(exclude_unset=True).items()
                if v is not None or k in CLEARABLE_PROMOTION_FIELDS
            }
            return ledger_service.catalog.update(promo_id, changes).to_dict()
        except PromotionNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except PromotionError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.delete("/promotions/{promo_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Promotions"])
    def delete_promotion(promo_id: int):
        try:
            ledger_service.catalog.delete(promo_id)
        except PromotionNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @app.post("/promotions/{promo_id}/toggle", tags=["Promotions"])
    def toggle_promotion(promo_id: int):
        try:
            return ledger_service.catalog.toggle_status(promo_id).to_dict()
        except PromotionNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @app.get("/promotions/{promo_id}/usages", tags=["Promotions"])
    def list_promotion_usages(promo_id: int, page: int = 1, page_size: int = 20):
        usages, total = ledger_service.catalog.list_usages(promo_id=promo_id, page=page, page_size=page_size)
        return {"items": [u.to_dict() for u in usages], "total": total}

    @app.get("/config/balance", tags=["Config"])
    def get_balance_config():
        return ledger_service.config_store.get()

    @app.put("/config/balance", tags=["Config"])
    def save_balance_config(payload: dict):
        try:
            return ledger_service.config_store.save(payload)
        except LedgerServiceError as e:
            raise ledger_http_error(e, raw=True)

    @app.get("/alerts", tags=["Alerts"])
    def list_alerts(page: int = 1, page_size: int = 20, type: Optional[AlertType] = None,
                    level: Optional[AlertLevel] = None, status: Optional[AlertStatus] = None):
        alerts, total = ledger_service.monitor.list_alerts(page, page_size, type, level, status)
        return {"items": alerts, "total": total}

    @app.post("/alerts/{alert_id}/handle", response_model=AlertEvent, tags=["Alerts"])
    def handle_alert(alert_id: int, request: HandleAlertRequest) -> AlertEvent:
        try:
            return ledger_service.monitor.handle_alert(alert_id, request.status, request.handled_by, request.remark)
        except LedgerServiceError as e:
            raise ledger_http_error(e, raw=True)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
