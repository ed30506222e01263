from .accounts import AccountSettingsService
from .alerts import AccountAlert, AccountAlertService
from .campaigns import (
    CampaignAggregator,
    CampaignPricing,
    CampaignRepository,
    CampaignTotals,
    CampaignTotalsService,
    CeleryCampaignAggregator,
    SqlCampaignRepository,
)
from .charging import ChargeEngine, ChargeResult, build_charge_engine
from .errors import (
    AccountInactive,
    AccountNotFound,
    AppendOnlyViolation,
    CampaignNotFound,
    DuplicateRequest,
    InsufficientFunds,
    InvalidChargeRequest,
    LedgerError,
    LedgerUnavailable,
    NoPaymentMethod,
    PredicateFailed,
    TopUpFailed,
)
from .gateway import (
    GatewayCharge,
    GatewayError,
    OffSessionChargeRequest,
    PaymentDeclined,
    PaymentGateway,
    PaymentTimeout,
    StripePaymentGateway,
    build_stripe_gateway,
)
from .ledger import AccountState, LedgerEntry, LedgerEntryDraft, LedgerStore, SqlLedgerStore
from .pricing import FLAT_FEES, impression_cost, quantize_money
from .reconciliation import LedgerReconciliationResult, LedgerReconciliationService
from .topup import (
    TopUpCoordinator,
    TopUpResult,
    build_topup_coordinator,
    topup_idempotency_key,
)

__all__ = [
    "AccountSettingsService",
    "AccountAlert",
    "AccountAlertService",
    "CampaignAggregator",
    "CampaignPricing",
    "CampaignRepository",
    "CampaignTotals",
    "CampaignTotalsService",
    "CeleryCampaignAggregator",
    "SqlCampaignRepository",
    "ChargeEngine",
    "ChargeResult",
    "build_charge_engine",
    "AccountInactive",
    "AccountNotFound",
    "AppendOnlyViolation",
    "CampaignNotFound",
    "DuplicateRequest",
    "InsufficientFunds",
    "InvalidChargeRequest",
    "LedgerError",
    "LedgerUnavailable",
    "NoPaymentMethod",
    "PredicateFailed",
    "TopUpFailed",
    "GatewayCharge",
    "GatewayError",
    "OffSessionChargeRequest",
    "PaymentDeclined",
    "PaymentGateway",
    "PaymentTimeout",
    "StripePaymentGateway",
    "build_stripe_gateway",
    "AccountState",
    "LedgerEntry",
    "LedgerEntryDraft",
    "LedgerStore",
    "SqlLedgerStore",
    "FLAT_FEES",
    "impression_cost",
    "quantize_money",
    "LedgerReconciliationResult",
    "LedgerReconciliationService",
    "TopUpCoordinator",
    "TopUpResult",
    "build_topup_coordinator",
    "topup_idempotency_key",
]
