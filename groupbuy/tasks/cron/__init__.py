from .general_order_automation import general_order_automation_task

__all__ = [
    "general_order_automation_task",
]
