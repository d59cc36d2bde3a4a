from schedulers.base import PeriodicService
from schedulers.intelligence import IntelligenceUpdateScheduler
from schedulers.scheduled_send import ScheduledSendExecutor

__all__ = ["PeriodicService", "IntelligenceUpdateScheduler", "ScheduledSendExecutor"]
