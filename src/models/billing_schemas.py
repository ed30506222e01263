from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

TransactionType = Literal["charge", "topup", "deposit", "refund", "adjustment"]
FeeType = Literal["agent_setup", "custom_phone"]


class ImpressionChargeRequest(BaseModel):
    advertiser_id: int
    campaign_id: int
    impression_count: int = Field(gt=0)
    idempotency_key: str = Field(min_length=1)


class FeeChargeRequest(BaseModel):
    advertiser_id: int
    fee_type: FeeType
    idempotency_key: str = Field(min_length=1)
    campaign_id: Optional[int] = None


class DepositRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    external_payment_ref: str = Field(min_length=1)
    description: str = "Retainer deposit"


class TopUpResponse(BaseModel):
    advertiser_id: int
    credited_amount: Decimal
    new_balance: Decimal
    transaction_id: int
    external_payment_ref: Optional[str]
    duplicate: bool

    class Config:
        from_attributes = True


class ChargeResponse(BaseModel):
    advertiser_id: int
    campaign_id: Optional[int]
    charged_amount: Decimal
    new_balance: Decimal
    transaction_id: int
    idempotency_key: str
    duplicate: bool
    top_up: Optional[TopUpResponse] = None

    class Config:
        from_attributes = True


class AutoTopUpSettingsRequest(BaseModel):
    enabled: Optional[bool] = None
    threshold: Optional[Decimal] = None
    amount: Optional[Decimal] = None


class PaymentMethodRequest(BaseModel):
    payment_method_ref: Optional[str] = None
    payment_customer_ref: Optional[str] = None


class AccountResponse(BaseModel):
    advertiser_id: int
    company_name: str
    balance: Decimal
    auto_topup_enabled: bool
    auto_topup_threshold: Decimal
    auto_topup_amount: Decimal
    has_payment_method: bool
    is_active: bool


class TransactionResponse(BaseModel):
    transaction_id: int
    advertiser_id: int
    transaction_type: TransactionType
    amount: Decimal
    balance_after: Decimal
    description: str
    campaign_id: Optional[int]
    impression_count: Optional[int]
    external_payment_ref: Optional[str]
    idempotency_key: str
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class AlertResponse(BaseModel):
    alert_id: int
    advertiser_id: int
    kind: str
    message: str
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class AccountSummaryResponse(BaseModel):
    account: AccountResponse
    transactions: List[TransactionResponse]
    alerts: List[AlertResponse]
