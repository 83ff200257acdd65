from .events import EventBus
from .scheduler import ReminderScheduler

__all__ = ["EventBus", "ReminderScheduler"]
