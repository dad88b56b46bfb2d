"""
Celery Application — background jobs for the inspection consistency engine.
Runs the duplicate-entry merge pass and the template drift audit off the
FastAPI request path.

Beat schedule:
  deduplicate_inspection_entries — nightly at DEDUP_SCHEDULE_HOUR_UTC:00 UTC
  audit_phase_templates          — nightly, 30 minutes after the dedup pass
"""
import os
from celery import Celery
from celery.schedules import crontab
from app.config import DEDUP_SCHEDULE_HOUR_UTC

BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

celery_app = Celery(
    "road_progress",
    broker=BROKER_URL,
    backend=RESULT_BACKEND,
    include=["app.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_soft_time_limit=900,   # 15 minutes soft limit
    task_time_limit=1800,       # 30 minutes hard limit
    result_expires=86400,       # Reports kept for a day
    # ── Beat schedule ────────────────────────────────────────────────────────
    beat_schedule={
        "dedup-inspection-entries-nightly": {
            "task": "tasks.deduplicate_inspection_entries",
            "schedule": crontab(hour=DEDUP_SCHEDULE_HOUR_UTC, minute=0),
            "options": {"expires": 3600},
        },
        "audit-phase-templates-nightly": {
            "task": "tasks.audit_phase_templates",
            "schedule": crontab(hour=DEDUP_SCHEDULE_HOUR_UTC, minute=30),
            "options": {"expires": 3600},
        },
    },
)
