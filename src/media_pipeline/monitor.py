"""Timeout monitor for Outputs stuck in PROCESSING.

A PROCESSING Output whose ``updatedAt`` is older than the threshold is failed
with a message that says which step most likely stalled. The failing write is
conditioned on the row still being PROCESSING, still stale and still holding
the same correlation ids, so a webhook that lands mid-sweep wins cleanly.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Set, Tuple

from .db_models import CORRELATION_FIELDS, utcnow
from .state import Event, MediaKind

logger = logging.getLogger(__name__)


def timeout_message(kind: MediaKind, output: dict, now: datetime, threshold_s: int) -> str:
    """Human-readable timeout reason, specific to the step that stalled."""
    stuck_minutes = int((now - output["updatedAt"]).total_seconds() // 60)
    message = (
        f"Timeout: {kind.label} generation exceeded {threshold_s // 60} minutes "
        f"(stuck for {stuck_minutes} minutes). "
    )
    if kind == MediaKind.VIDEO:
        if not output.get("renderJobId"):
            return message + "Render request may never have succeeded (no render job id)."
        if not output.get("captionJobId"):
            return message + "Render webhook may have never arrived."
        return message + "Captioning webhook may have never arrived or processing failed."
    return message + "Job may have crashed or failed without proper error handling."


@dataclass
class SweepReport:
    """Outcome of one sweep."""
    failed: List[Tuple[MediaKind, str]] = field(default_factory=list)
    submissions: Set[str] = field(default_factory=set)
    errors: int = 0


class TimeoutMonitor:
    """Fails PROCESSING Outputs that stopped making progress."""

    def __init__(self, store, aggregator, threshold_s: int = 1800,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.aggregator = aggregator
        self.threshold_s = threshold_s
        self.clock = clock

    def sweep(self) -> SweepReport:
        """Run one pass over every kind. Never raises; problems are logged and counted."""
        report = SweepReport()
        now = self.clock()
        cutoff = now - timedelta(seconds=self.threshold_s)

        for kind in MediaKind:
            try:
                stale = self.store.find_stale(kind, cutoff)
            except Exception:
                logger.exception("Timeout sweep could not query %s outputs", kind.value)
                report.errors += 1
                continue

            for output in stale:
                try:
                    self._expire(kind, output, now, cutoff, report)
                except Exception:
                    logger.exception("Timeout sweep failed on %s %s", kind.value, output["id"])
                    report.errors += 1

        for submission_id in sorted(report.submissions):
            try:
                self.aggregator.recompute(submission_id)
            except Exception:
                logger.exception("Timeout sweep could not recompute submission %s", submission_id)
                report.errors += 1

        if report.failed or report.errors:
            logger.info(
                "Timeout sweep: %d outputs failed, %d submissions updated, %d errors",
                len(report.failed), len(report.submissions), report.errors,
            )
        return report

    def _expire(self, kind: MediaKind, output: dict, now: datetime, cutoff: datetime,
                report: SweepReport) -> None:
        message = timeout_message(kind, output, now, self.threshold_s)
        match = {column: output.get(column) for column in CORRELATION_FIELDS.get(kind, ())}
        changed = self.store.transition_if(
            kind, output["id"], Event.TIME_OUT, match=match, stale_before=cutoff, error=message
        )
        if not changed:
            logger.info("%s %s moved on during sweep; left alone", kind.value, output["id"])
            return
        logger.warning("%s %s timed out: %s", kind.label, output["id"], message)
        report.failed.append((kind, output["id"]))
        report.submissions.add(output["submissionId"])


class MonitorScheduler:
    """Runs ``TimeoutMonitor.sweep`` at start-up and then every ``interval_s``."""

    def __init__(self, monitor: TimeoutMonitor, interval_s: int = 1800):
        self.monitor = monitor
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="timeout-monitor")
        self._thread.start()
        logger.info("Timeout monitor started (every %ds)", self.interval_s)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.monitor.sweep()
            if self._stop.wait(self.interval_s):
                break
