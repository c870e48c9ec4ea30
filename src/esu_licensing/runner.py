"""Concurrent execution of row tasks and result aggregation.

Rows are dispatched onto a bounded thread pool. Only the calling thread
writes results, one slot per row index, after the corresponding future
has finished; worker threads never touch shared state.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Sequence, Set

from .models import BatchReport, InputRow, Stage, TaskResult

logger = logging.getLogger(__name__)


class RowRunner(Protocol):
    def run(self, row: InputRow) -> TaskResult:
        ...

    def stop(self, stage: Stage, reason: str) -> None:
        ...

    def license_name_for(self, row: InputRow) -> str:
        ...


class BatchRunner:
    def __init__(
        self,
        task: RowRunner,
        max_workers: int = 8,
        batch_timeout: Optional[float] = None,
        auth_failure_threshold: int = 5,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._task = task
        self._max_workers = max_workers
        self._batch_timeout = batch_timeout
        self._auth_failure_threshold = auth_failure_threshold

    def run(self, rows: Sequence[InputRow]) -> BatchReport:
        rows = list(rows)
        report = BatchReport()
        if not rows:
            report.finished_at = datetime.now(timezone.utc)
            return report

        logger.info("Dispatching %d row(s) with up to %d worker(s)", len(rows), self._max_workers)
        slots: List[Optional[TaskResult]] = [None] * len(rows)
        deadline = None if self._batch_timeout is None else time.monotonic() + self._batch_timeout

        pool = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="esu-row")
        try:
            futures: Dict[Future[TaskResult], int] = {
                pool.submit(self._task.run, row): index for index, row in enumerate(rows)
            }
            pending: Set[Future[TaskResult]] = set(futures)
            completed = 0
            auth_failures = 0

            while pending:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                done, pending = wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)
                if not done:
                    logger.error("Batch deadline of %ss reached with %d row(s) unfinished", self._batch_timeout, len(pending))
                    report.aborted_reason = f"batch deadline of {self._batch_timeout}s exceeded"
                    self._task.stop(Stage.TIMEOUT, report.aborted_reason)
                    for future in pending:
                        future.cancel()
                        index = futures[future]
                        slots[index] = self._unfinished(rows[index], Stage.TIMEOUT, report.aborted_reason)
                    pending = set()
                    break

                for future in done:
                    index = futures[future]
                    result = self._collect(future, rows[index])
                    slots[index] = result
                    completed += 1
                    if result.stage is Stage.AUTH:
                        auth_failures += 1
                    self._log_result(result, completed, len(rows))

                if self._should_short_circuit(completed, auth_failures) and report.aborted_reason is None:
                    report.aborted_reason = (
                        f"first {completed} row(s) all failed authentication; remaining rows skipped"
                    )
                    logger.error("Aborting batch: %s", report.aborted_reason)
                    self._task.stop(Stage.SKIPPED, report.aborted_reason)
                    still_running: Set[Future[TaskResult]] = set()
                    for future in pending:
                        if future.cancel():
                            index = futures[future]
                            slots[index] = self._unfinished(rows[index], Stage.SKIPPED, report.aborted_reason)
                        else:
                            still_running.add(future)
                    pending = still_running
        finally:
            # Abandoned rows finish their current call, then halt before the next one.
            pool.shutdown(wait=deadline is None, cancel_futures=True)

        report.results = [slot for slot in slots if slot is not None]
        report.finished_at = datetime.now(timezone.utc)
        logger.info(
            "Batch finished: %d succeeded, %d failed, %d total",
            len(report.succeeded),
            len(report.failed),
            len(report.results),
        )
        return report

    def _should_short_circuit(self, completed: int, auth_failures: int) -> bool:
        threshold = self._auth_failure_threshold
        return threshold > 0 and completed >= threshold and auth_failures == completed

    def _collect(self, future: Future[TaskResult], row: InputRow) -> TaskResult:
        try:
            return future.result()
        except Exception as exc:  # noqa: BLE001 - RowTask should not raise, but a custom task might
            logger.exception("Task for server '%s' raised", row.server_name)
            return TaskResult(
                row=row,
                license_name=self._task.license_name_for(row),
                stage=Stage.INTERNAL,
                error=f"{type(exc).__name__}: {exc}",
            )

    def _unfinished(self, row: InputRow, stage: Stage, reason: str) -> TaskResult:
        return TaskResult(row=row, license_name=self._task.license_name_for(row), stage=stage, error=reason)

    @staticmethod
    def _log_result(result: TaskResult, completed: int, total: int) -> None:
        if result.succeeded:
            logger.info("[%d/%d] %s: succeeded", completed, total, result.row.server_name)
        else:
            logger.warning(
                "[%d/%d] %s: failed at %s: %s",
                completed,
                total,
                result.row.server_name,
                result.stage.value,
                result.error,
            )
