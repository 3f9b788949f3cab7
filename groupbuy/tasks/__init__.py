from .cron import *

__all__ = [
    # Scheduled/Cron Tasks
    "general_order_automation_task",
]
