from tramoya.queue.broker import Broker, RedisBroker
from tramoya.queue.inmemory import InMemoryBroker
from tramoya.queue.service import JobQueue, QueueService, QueueWorker

__all__ = [
    "Broker",
    "RedisBroker",
    "InMemoryBroker",
    "JobQueue",
    "QueueService",
    "QueueWorker",
]
