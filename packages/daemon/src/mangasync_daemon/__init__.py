"""MangaSync Daemon - background worker process.

Provides:
- QueueConsumer: bounded-concurrency consumers, one per queue
- Scheduler: leader-elected maintenance and poll scheduling
- Heartbeat / workers_online: worker liveness
- Prometheus metrics
"""

from mangasync_daemon.heartbeat import Heartbeat, workers_online, write_heartbeat
from mangasync_daemon.scheduler import Scheduler, enqueue_due_polls, run_safety_monitor
from mangasync_daemon.worker import QUEUE_CONCURRENCY, QueueConsumer, decode_job, is_final

__version__ = "1.0.0"

__all__ = [
    "QueueConsumer",
    "QUEUE_CONCURRENCY",
    "decode_job",
    "is_final",
    "Scheduler",
    "enqueue_due_polls",
    "run_safety_monitor",
    "Heartbeat",
    "write_heartbeat",
    "workers_online",
]
