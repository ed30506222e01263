from .charge_impressions import run_charge_impressions
from .reconcile_ledgers import run_reconciliation
from .update_campaign_totals import run_rebuild_campaign_totals, run_update_campaign_totals

__all__ = [
    "run_charge_impressions",
    "run_reconciliation",
    "run_rebuild_campaign_totals",
    "run_update_campaign_totals",
]
