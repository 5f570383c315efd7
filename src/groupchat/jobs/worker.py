"""Queue worker that delivers stored group chat jobs to the handler."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from groupchat.jobs.handler import GroupChatHandler
from groupchat.jobs.models import ErrorResult, JobOutcomeStatus, QueueTaskStatus
from groupchat.jobs.repository import GroupChatRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    discarded: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.discarded += other.discarded
        self.idle_polls += other.idle_polls


class GroupChatWorker:
    """Claims pending queue records and runs them through the handler."""

    def __init__(
        self,
        *,
        repository: GroupChatRepository,
        handler: GroupChatHandler,
        worker_id: str,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self.repository = repository
        self.handler = handler
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_requested = False

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue.

        SIGINT/SIGTERM received while the job runs let it finish instead of
        interrupting it half-way.
        """

        with self._signal_handlers():
            return self._run_once()

    def _run_once(self) -> WorkerRunSummary:
        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        task = self.repository.claim_next_pending_task(worker_id=self.worker_id)
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        try:
            outcome = self.handler.handle_raw(task.payload_json)
        except ValueError as error:
            logger.warning("Queue task %s has an undecodable payload: %s", task.task_id, error)
            try:
                self.repository.update_queue_task(
                    task.task_id,
                    QueueTaskStatus.FAILED,
                    ErrorResult(errors=(f"invalid payload: {error}",)),
                )
            except Exception as store_error:  # noqa: BLE001
                logger.error(
                    "Queue task %s: update queue status failed: %s",
                    task.task_id,
                    store_error,
                )
            summary.failed = 1
            return summary

        if outcome.status == JobOutcomeStatus.SUCCEEDED:
            summary.succeeded = 1
        elif outcome.status == JobOutcomeStatus.DISCARDED:
            summary.discarded = 1
        else:
            summary.failed = 1
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until queue is idle or max_tasks reached.

        Args:
            max_tasks: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self._run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue

                consecutive_idle = 0

    def request_stop(self) -> None:
        self._stop_requested = True

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Worker %s received %s, stopping after current job", self.worker_id, name)
            self.request_stop()

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
