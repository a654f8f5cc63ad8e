"""
Fire-and-forget delivery of decisions to an audit sink.

``submit`` never blocks the caller. When the bounded queue is full the record
is dropped and counted; the decision itself is unaffected. A single worker
thread owns an asyncio loop and awaits the sink for each record in order.
"""

import asyncio
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..rules.models import Decision, ResourceRef, SubjectRef
from .sinks import AuditSink


@dataclass(frozen=True)
class AuditRecord:
    decision: Decision
    subject: SubjectRef
    resource: ResourceRef


_STOP = object()


class AuditDispatcher:
    """Bounded queue in front of an AuditSink."""

    def __init__(self, sink: AuditSink, capacity: int = 1024, metrics: Optional[MetricsCollector] = None,
                 autostart: bool = True):
        if capacity < 1:
            raise ValueError("audit queue capacity must be positive")
        self.sink = sink
        self.capacity = capacity
        self.metrics = metrics
        self.autostart = autostart
        self.logger = get_logger("policy.audit.dispatcher")

        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=capacity)
        self._thread: Optional[threading.Thread] = None
        self._state_lock = threading.Lock()
        self._counter_lock = threading.Lock()
        self._stopped = False

        self.submitted = 0
        self.delivered = 0
        self.dropped = 0
        self.failed = 0

    def start(self) -> None:
        with self._state_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stopped = False
            self._thread = threading.Thread(target=self._run, name="audit-dispatcher", daemon=True)
            self._thread.start()
        self.logger.info("Audit dispatcher started", capacity=self.capacity)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def submit(self, decision: Decision, subject: SubjectRef, resource: ResourceRef) -> bool:
        """Queue a record for delivery; False when it was dropped."""
        if self.autostart and not self._stopped and not self.running:
            self.start()

        # stop() flips _stopped under the same lock before queueing its sentinel,
        # so an accepted record always sits ahead of it.
        with self._state_lock:
            if self._stopped:
                reason = "dispatcher stopped"
            else:
                try:
                    self._queue.put_nowait(AuditRecord(decision, subject, resource))
                    reason = None
                except queue.Full:
                    reason = "queue full"

        if reason is not None:
            self._record_drop(decision, reason)
            return False

        with self._counter_lock:
            self.submitted += 1
        if self.metrics:
            self.metrics.set_gauge("audit_queue_depth", self._queue.qsize())
        return True

    def _record_drop(self, decision: Decision, reason: str) -> None:
        with self._counter_lock:
            self.dropped += 1
            dropped = self.dropped
        if self.metrics:
            self.metrics.increment_counter("audit_records_dropped_total")
        self.logger.warning(
            "Audit record dropped",
            reason=reason,
            subject_id=decision.subject_id,
            granted=decision.granted,
            dropped_total=dropped
        )

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        try:
            while True:
                item = self._queue.get()
                try:
                    if item is _STOP:
                        break
                    self._deliver(loop, item)
                finally:
                    self._queue.task_done()
        finally:
            try:
                loop.run_until_complete(self.sink.close())
            except Exception as e:
                self.logger.error("Error closing audit sink", error=str(e))
            loop.close()

    def _deliver(self, loop: asyncio.AbstractEventLoop, record: AuditRecord) -> None:
        try:
            loop.run_until_complete(self.sink.record(record.decision, record.subject, record.resource))
        except Exception as e:
            with self._counter_lock:
                self.failed += 1
            if self.metrics:
                self.metrics.increment_counter("audit_sink_failures_total")
            self.logger.error(
                "Audit sink failed to record decision",
                error=str(e),
                error_code=getattr(e, "code", None),
                subject_id=record.decision.subject_id
            )
        else:
            with self._counter_lock:
                self.delivered += 1
        finally:
            if self.metrics:
                self.metrics.set_gauge("audit_queue_depth", self._queue.qsize())

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every queued record has been handled."""
        if not self.running:
            return self._queue.unfinished_tasks == 0
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def stop(self, timeout: float = 5.0) -> None:
        """Drain the queue and stop the worker."""
        with self._state_lock:
            self._stopped = True
            thread = self._thread
        if thread is None:
            return
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            self.logger.error("Audit dispatcher could not be stopped cleanly", pending=self._queue.qsize())
            return
        thread.join(timeout)
        self.logger.info("Audit dispatcher stopped", **self.stats())

    def stats(self) -> Dict[str, Any]:
        with self._counter_lock:
            return {
                "capacity": self.capacity,
                "queued": self._queue.qsize(),
                "submitted": self.submitted,
                "delivered": self.delivered,
                "dropped": self.dropped,
                "failed": self.failed,
                "running": self.running
            }
