from celery.schedules import crontab

beat_schedule = {
    # Verify every advertiser ledger against its cached balance at 3:00 AM.
    "reconcile_ledgers_nightly": {
        "task": "ledger_engine.reconcile_ledgers",
        "schedule": crontab(minute=0, hour=3),
        "args": (),
    },
    # Campaign counters are best-effort; recompute them from the ledger.
    "rebuild_campaign_totals_nightly": {
        "task": "ledger_engine.rebuild_campaign_totals",
        "schedule": crontab(minute=30, hour=3),
        "args": (),
    },
}
