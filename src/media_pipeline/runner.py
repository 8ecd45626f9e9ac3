"""Long-running worker process: job pool, timeout monitor and queue upkeep.

The worker process owns three loops:

- ``JobWorkerPool`` slots claiming and dispatching jobs
- ``MonitorScheduler`` sweeping stuck Outputs
- a maintenance thread returning crashed jobs to pending and applying the
  retention caps
"""

import logging
import signal
import threading
import time
from typing import Any, Dict, Optional

from .container import Container
from .models import PipelineConfig
from .monitor import MonitorScheduler
from .queue import SQLiteQueue

logger = logging.getLogger(__name__)


def run_maintenance(config: PipelineConfig, queue=None) -> Dict[str, int]:
    """Reset stale running jobs and prune finished ones. Returns counts."""
    own_queue = queue is None
    queue = queue or SQLiteQueue(config.queue.db_path)
    retention = config.queue.retention
    try:
        reset = queue.reset_stale_running(timeout_s=config.worker.stale_job_timeout_s)
        pruned = queue.prune(
            retention.keep_completed,
            retention.completed_max_age_s,
            retention.keep_failed,
            retention.failed_max_age_s,
        )
    finally:
        if own_queue:
            queue.close()
    if reset or pruned:
        logger.info("Queue maintenance: %d stale jobs reset, %d finished jobs pruned", reset, pruned)
    return {"reset": reset, "pruned": pruned}


def _maintenance_loop(config: PipelineConfig, stop_event: threading.Event) -> None:
    queue = SQLiteQueue(config.queue.db_path)
    try:
        while not stop_event.wait(config.worker.prune_interval_s):
            try:
                run_maintenance(config, queue)
            except Exception:
                logger.exception("Queue maintenance failed")
    finally:
        queue.close()


def run_worker(
    container: Container,
    max_jobs: Optional[int] = None,
    until_empty: bool = False,
    install_signal_handlers: bool = True,
) -> Dict[str, Any]:
    """Process jobs until interrupted (or drained / budget exhausted).

    Args:
        container: Wired pipeline
        max_jobs: Stop after this many jobs were claimed
        until_empty: Stop once nothing is due
        install_signal_handlers: Stop gracefully on SIGINT/SIGTERM

    Returns:
        Job outcome counts plus total wall time
    """
    config = container.config
    container.store.create_schema()
    stop_event = threading.Event()

    if install_signal_handlers and threading.current_thread() is threading.main_thread():
        def request_stop(signum, frame):
            logger.info("Received signal %s, finishing current jobs...", signum)
            stop_event.set()

        signal.signal(signal.SIGINT, request_stop)
        signal.signal(signal.SIGTERM, request_stop)

    # Jobs left running by a crashed worker become claimable again
    run_maintenance(config)

    monitor = None
    if config.monitor.enabled:
        monitor = MonitorScheduler(container.monitor, interval_s=config.monitor.interval_s)
        monitor.start()

    upkeep_stop = threading.Event()
    upkeep = threading.Thread(
        target=_maintenance_loop, args=(config, upkeep_stop), daemon=True, name="queue-maintenance"
    )
    upkeep.start()

    start = time.time()
    try:
        with container.worker_pool() as pool:
            logger.info("Worker started with %d slots", config.worker.concurrency)
            stats = pool.run(stop_event=stop_event, max_jobs=max_jobs, until_empty=until_empty)
    finally:
        upkeep_stop.set()
        if monitor is not None:
            monitor.stop()
        upkeep.join(timeout=5)

    return {**stats, "total_duration": time.time() - start}


def get_queue_stats(config: PipelineConfig) -> Dict[str, int]:
    queue = SQLiteQueue(config.queue.db_path)
    try:
        return queue.counts()
    finally:
        queue.close()
