from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal

LEDGER_QUANTUM = Decimal("0.0001")
CENT = Decimal("0.01")
IMPRESSIONS_PER_CPM = Decimal("1000")

# Flat fees billed through the ledger alongside impressions.
FLAT_FEES: dict[str, Decimal] = {
    "agent_setup": Decimal("50.00"),
    "custom_phone": Decimal("10.00"),
}


def to_decimal(value: object) -> Decimal:
    """Convert DB/JSON values to Decimal without a float round trip."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value: object) -> Decimal:
    # Banker's rounding keeps millions of micro-charges from drifting one way.
    return to_decimal(value).quantize(LEDGER_QUANTUM, rounding=ROUND_HALF_EVEN)


def quantize_cents(value: object) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_EVEN)


def to_minor_units(value: object) -> int:
    """Whole cents, as payment processors expect."""
    return int(quantize_cents(value) * 100)


def impression_cost(cpm_bid: object, impression_count: int) -> Decimal:
    if impression_count <= 0:
        raise ValueError("impression_count must be positive")
    cpm = to_decimal(cpm_bid)
    if cpm < 0:
        raise ValueError("cpm_bid cannot be negative")
    return quantize_money(cpm / IMPRESSIONS_PER_CPM * impression_count)
