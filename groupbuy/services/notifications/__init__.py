from .queue_store import NotificationQueueStore
from .system_commands import SystemNotification
from .router import SystemNotificationRouter
from .dispatcher import NotificationDispatcher
from .templates import TemplateRenderer

__all__ = [
    "NotificationQueueStore",
    "SystemNotification",
    "SystemNotificationRouter",
    "NotificationDispatcher",
    "TemplateRenderer",
]
