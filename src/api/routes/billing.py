from typing import List, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from src.api.auth.auth import require_service_token
from src.api.database.database import get_db
from src.ledger_engine.services import (
    AccountAlertService,
    AccountInactive,
    AccountNotFound,
    AccountSettingsService,
    AccountState,
    CampaignNotFound,
    ChargeEngine,
    FLAT_FEES,
    InsufficientFunds,
    InvalidChargeRequest,
    LedgerError,
    LedgerReconciliationService,
    LedgerStore,
    LedgerUnavailable,
    NoPaymentMethod,
    SqlLedgerStore,
    TopUpCoordinator,
    TopUpFailed,
    build_charge_engine,
    build_topup_coordinator,
)
from src.models.billing_schemas import (
    AccountResponse,
    AccountSummaryResponse,
    AlertResponse,
    AutoTopUpSettingsRequest,
    ChargeResponse,
    DepositRequest,
    FeeChargeRequest,
    ImpressionChargeRequest,
    PaymentMethodRequest,
    TopUpResponse,
    TransactionResponse,
)


router = APIRouter(
    prefix="/api/billing",
    tags=["billing"],
    dependencies=[Depends(require_service_token)],
)

FEE_DESCRIPTIONS = {
    "agent_setup": "Agent setup fee",
    "custom_phone": "Custom phone number fee",
}


def get_charge_engine() -> ChargeEngine:
    return build_charge_engine()


def get_topup_coordinator() -> Optional[TopUpCoordinator]:
    return build_topup_coordinator()


def get_ledger_store() -> LedgerStore:
    return SqlLedgerStore()


def get_alert_service() -> AccountAlertService:
    return AccountAlertService()


def get_account_settings() -> AccountSettingsService:
    return AccountSettingsService()


def raise_http_error(exc: LedgerError) -> NoReturn:
    """Translate ledger failures to HTTP status codes."""
    if isinstance(exc, (AccountNotFound, CampaignNotFound)):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, InvalidChargeRequest):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, AccountInactive):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, (InsufficientFunds, NoPaymentMethod, TopUpFailed)):
        raise HTTPException(status_code=402, detail=str(exc)) from exc
    if isinstance(exc, LedgerUnavailable):
        raise HTTPException(status_code=503, detail="Ledger temporarily unavailable") from exc
    raise HTTPException(status_code=500, detail=str(exc)) from exc


def to_account_response(account: AccountState) -> AccountResponse:
    return AccountResponse(
        advertiser_id=account.advertiser_id,
        company_name=account.company_name,
        balance=account.balance,
        auto_topup_enabled=account.auto_topup_enabled,
        auto_topup_threshold=account.auto_topup_threshold,
        auto_topup_amount=account.auto_topup_amount,
        has_payment_method=bool(account.payment_method_ref),
        is_active=account.is_active,
    )


@router.post("/charges", response_model=ChargeResponse)
def charge_impressions(
    payload: ImpressionChargeRequest,
    db: Session = Depends(get_db),
    engine: ChargeEngine = Depends(get_charge_engine),
):
    try:
        return engine.charge(
            session=db,
            advertiser_id=payload.advertiser_id,
            campaign_id=payload.campaign_id,
            impression_count=payload.impression_count,
            idempotency_key=payload.idempotency_key,
        )
    except LedgerError as e:
        raise_http_error(e)


@router.post("/fees", response_model=ChargeResponse)
def charge_fee(
    payload: FeeChargeRequest,
    db: Session = Depends(get_db),
    engine: ChargeEngine = Depends(get_charge_engine),
):
    try:
        return engine.charge_fee(
            session=db,
            advertiser_id=payload.advertiser_id,
            amount=FLAT_FEES[payload.fee_type],
            description=FEE_DESCRIPTIONS[payload.fee_type],
            idempotency_key=payload.idempotency_key,
            campaign_id=payload.campaign_id,
        )
    except LedgerError as e:
        raise_http_error(e)


@router.post("/advertisers/{advertiser_id}/deposits", response_model=TopUpResponse)
def credit_deposit(
    advertiser_id: int,
    payload: DepositRequest,
    db: Session = Depends(get_db),
    topups: Optional[TopUpCoordinator] = Depends(get_topup_coordinator),
):
    if topups is None:
        raise HTTPException(status_code=503, detail="Payment processor is not configured")
    try:
        return topups.credit_deposit(
            session=db,
            advertiser_id=advertiser_id,
            amount=payload.amount,
            external_payment_ref=payload.external_payment_ref,
            description=payload.description,
        )
    except LedgerError as e:
        raise_http_error(e)


@router.get("/advertisers/{advertiser_id}", response_model=AccountSummaryResponse)
def get_account_summary(
    advertiser_id: int,
    limit: int = Query(default=20, ge=1, le=200),
    db: Session = Depends(get_db),
    ledger: LedgerStore = Depends(get_ledger_store),
    alerts: AccountAlertService = Depends(get_alert_service),
):
    try:
        account = ledger.get_account(session=db, advertiser_id=advertiser_id)
        transactions = ledger.list_transactions(
            session=db,
            advertiser_id=advertiser_id,
            limit=limit,
            newest_first=True,
        )
    except LedgerError as e:
        raise_http_error(e)

    return AccountSummaryResponse(
        account=to_account_response(account),
        transactions=[TransactionResponse.model_validate(entry) for entry in transactions],
        alerts=[
            AlertResponse.model_validate(alert)
            for alert in alerts.list_open_alerts(session=db, advertiser_id=advertiser_id)
        ],
    )


@router.get(
    "/advertisers/{advertiser_id}/transactions",
    response_model=List[TransactionResponse],
)
def list_transactions(
    advertiser_id: int,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
    ledger: LedgerStore = Depends(get_ledger_store),
):
    try:
        ledger.get_account(session=db, advertiser_id=advertiser_id)
        return ledger.list_transactions(
            session=db,
            advertiser_id=advertiser_id,
            limit=limit,
            newest_first=True,
        )
    except LedgerError as e:
        raise_http_error(e)


@router.patch("/advertisers/{advertiser_id}/auto-topup", response_model=AccountResponse)
def update_auto_topup(
    advertiser_id: int,
    payload: AutoTopUpSettingsRequest,
    db: Session = Depends(get_db),
    accounts: AccountSettingsService = Depends(get_account_settings),
):
    try:
        account = accounts.update_auto_topup(
            session=db,
            advertiser_id=advertiser_id,
            enabled=payload.enabled,
            threshold=payload.threshold,
            amount=payload.amount,
        )
    except LedgerError as e:
        raise_http_error(e)
    return to_account_response(account)


@router.put("/advertisers/{advertiser_id}/payment-method", response_model=AccountResponse)
def update_payment_method(
    advertiser_id: int,
    payload: PaymentMethodRequest,
    db: Session = Depends(get_db),
    accounts: AccountSettingsService = Depends(get_account_settings),
    alerts: AccountAlertService = Depends(get_alert_service),
):
    try:
        account = accounts.update_payment_method(
            session=db,
            advertiser_id=advertiser_id,
            payment_method_ref=payload.payment_method_ref,
            payment_customer_ref=payload.payment_customer_ref,
        )
    except LedgerError as e:
        raise_http_error(e)
    if account.payment_method_ref:
        # A new card clears the alerts asking the advertiser to fix billing.
        alerts.resolve_alerts(session=db, advertiser_id=advertiser_id)
    return to_account_response(account)


@router.get("/advertisers/{advertiser_id}/reconciliation")
def reconcile_account(
    advertiser_id: int,
    db: Session = Depends(get_db),
    ledger: LedgerStore = Depends(get_ledger_store),
):
    try:
        result = LedgerReconciliationService(ledger=ledger).reconcile_account(
            session=db,
            advertiser_id=advertiser_id,
        )
    except LedgerError as e:
        raise_http_error(e)
    return result.to_dict()
