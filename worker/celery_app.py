from celery import Celery
from kombu import Queue

from core.env import env_str
from services.schedule_loader import as_celery_schedule, load_schedule_config

CELERY_BROKER_URL = env_str("CELERY_BROKER_URL", "redis://redis:6379/0") or "redis://redis:6379/0"
CELERY_RESULT_BACKEND = env_str("CELERY_RESULT_BACKEND", "redis://redis:6379/1")
CELERY_TIMEZONE = env_str("CELERY_TIMEZONE", "UTC") or "UTC"
CELERY_DEFAULT_QUEUE = env_str("CELERY_DEFAULT_QUEUE", "tier") or "tier"

app = Celery(
    "tier_engine",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=["services.tier_tasks"],
)

app.conf.update(
    task_track_started=True,
    timezone=CELERY_TIMEZONE,
    task_default_queue=CELERY_DEFAULT_QUEUE,
    task_queues=(Queue(CELERY_DEFAULT_QUEUE),),
    worker_prefetch_multiplier=1,
    beat_schedule={},
)

yaml_timezone, yaml_entries, _ = load_schedule_config()
if yaml_entries:
    app.conf.beat_schedule.update(as_celery_schedule(yaml_entries))
if yaml_timezone:
    app.conf.update(timezone=yaml_timezone)
current_tz = getattr(app.conf, "timezone", None) or "UTC"
app.conf.enable_utc = str(current_tz).upper() == "UTC"
