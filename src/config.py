import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class LedgerSettings:
    """Runtime settings for the billing ledger, read from the environment."""

    stripe_secret_key: str | None
    stripe_currency: str
    stripe_timeout_seconds: int
    topup_window_seconds: int
    service_token: str | None

    @classmethod
    def from_env(cls) -> "LedgerSettings":
        return cls(
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_currency=os.getenv("STRIPE_CURRENCY", "usd"),
            stripe_timeout_seconds=int(os.getenv("STRIPE_TIMEOUT_SECONDS", "10")),
            topup_window_seconds=int(os.getenv("TOPUP_WINDOW_SECONDS", "300")),
            service_token=os.getenv("LEDGER_SERVICE_TOKEN"),
        )
