from __future__ import annotations

from typing import TYPE_CHECKING

from src.models.advertiser_transaction import AppendOnlyViolation

if TYPE_CHECKING:
    from .ledger import LedgerEntry


class LedgerError(Exception):
    """Base class for failures of a charge, top-up or deposit."""

    retryable = False


class InvalidChargeRequest(LedgerError, ValueError):
    pass


class AccountNotFound(LedgerError):
    pass


class AccountInactive(LedgerError):
    pass


class CampaignNotFound(LedgerError):
    pass


class InsufficientFunds(LedgerError):
    def __init__(self, advertiser_id: int, required: object, message: str | None = None) -> None:
        self.advertiser_id = advertiser_id
        self.required = required
        super().__init__(
            message
            or f"advertiser_id={advertiser_id} has insufficient balance for {required}"
        )


class NoPaymentMethod(LedgerError):
    def __init__(self, advertiser_id: int) -> None:
        self.advertiser_id = advertiser_id
        super().__init__(f"advertiser_id={advertiser_id} has no payment method on file")


class TopUpFailed(LedgerError):
    def __init__(self, advertiser_id: int, reason: str) -> None:
        self.advertiser_id = advertiser_id
        self.reason = reason
        super().__init__(f"auto top-up failed for advertiser_id={advertiser_id}: {reason}")


class LedgerUnavailable(LedgerError):
    """The store could not complete the request; safe to retry with the same key."""

    retryable = True


class PredicateFailed(LedgerError):
    """Conditional adjust refused: the balance did not satisfy the floor."""


class DuplicateRequest(LedgerError):
    """The idempotency key already resolved; carries the recorded entry."""

    def __init__(self, existing: LedgerEntry) -> None:
        self.existing = existing
        super().__init__(
            f"idempotency_key={existing.idempotency_key} already recorded as "
            f"transaction_id={existing.transaction_id}"
        )


__all__ = [
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
]
