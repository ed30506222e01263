import os
from celery import Celery
from src.ledger_engine.schedules.beat import beat_schedule


broker_url = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
result_backend = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")
timezone = os.getenv("CELERY_TIMEZONE", "UTC")

app = Celery(
    "adledger",
    broker=broker_url,
    backend=result_backend,
    include=["src.ledger_engine.tasks"],
)

app.conf.update(
    enable_utc=True,
    timezone=timezone,
    task_track_started=True,
    task_send_sent_event=True,
    result_expires=60 * 60 * 24,
    # A charge must not be acked before it ran; workers that die mid-task redeliver.
    task_acks_late=True,
    beat_schedule=beat_schedule,
)
