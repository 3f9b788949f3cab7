from celery.schedules import crontab
from .settings import settings

# Basic Celery Configuration
broker_url = f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"
result_backend = f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"

# Task Discovery
include = ["groupbuy.tasks"]

# Timezone Configuration
timezone = settings.CELERY_TIMEZONE
enable_utc = True

# Task Result Configuration
result_expires = 3600

# Task Serialization
task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"

# A tick stops starting new work at AUTOMATION_RUN_BUDGET_SECONDS; the hard
# limit only catches a hung worker.
task_track_started = True
task_soft_time_limit = int(settings.AUTOMATION_RUN_BUDGET_SECONDS) + 30
task_time_limit = int(settings.AUTOMATION_RUN_BUDGET_SECONDS) + 60

# Worker Configuration
worker_prefetch_multiplier = 1
worker_max_tasks_per_child = 1000

# Ticks are idempotent, a lost tick is simply picked up by the next one
task_acks_late = False
task_reject_on_worker_lost = False

beat_schedule = {
    "general-order-automation": {
        "task": "groupbuy.tasks.cron.general_order_automation.general_order_automation_task",
        "schedule": crontab(minute=f"*/{settings.AUTOMATION_INTERVAL_MINUTES}"),
        "args": ("general_order_automation_cron",),
        # Overlapping ticks are safe but pointless; drop ticks older than one interval
        "options": {"expires": settings.AUTOMATION_INTERVAL_MINUTES * 60},
    },
}

# Default Queue
task_default_queue = "groupbuy"

# Beat Scheduler Configuration
beat_schedule_filename = "tmp/celerybeat-schedule"
