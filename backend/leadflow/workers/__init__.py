"""
Workers Package
Queue consumers and the job scheduler
"""
from leadflow.workers.consumer_worker import QueueConsumerWorker
from leadflow.workers.scheduler_worker import SchedulerWorker

__all__ = [
    "QueueConsumerWorker",
    "SchedulerWorker"
]
