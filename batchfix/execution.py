from dataclasses import dataclass
from enum import StrEnum
import logging
import threading

from batchfix.errors import (
    DataSourceConnectionError,
    NonTransientExecutionError,
    RunCancelled,
    TransientExecutionError,
)
from batchfix.gateway import DataSource
from batchfix.record_store import ProcessedLedger, RecordStore
from batchfix.retry import RetryPolicy
from batchfix.schemas import (
    DescriptorStatus,
    ErrorEntry,
    ExecutionSummary,
    LedgerAction,
    RecordDescriptor,
    RunContext,
    utc_timestamp,
)


logger = logging.getLogger(__name__)


class AttemptState(StrEnum):
    COMMITTED_SUCCESS = "committed_success"
    COMMITTED_ZERO_ROWS = "committed_zero_rows"
    ROLLED_BACK_RETRY = "rolled_back_retry"
    ROLLED_BACK_FAILED = "rolled_back_failed"


@dataclass(frozen=True)
class AttemptResult:
    state: AttemptState
    rows_affected: int = 0
    error: str | None = None
    connection_lost: bool = False


class ExecutionEngine:
    def __init__(
        self,
        source: DataSource,
        store: RecordStore,
        *,
        policy: RetryPolicy,
        ledger: ProcessedLedger | None = None,
        shutdown: threading.Event | None = None,
    ) -> None:
        self.source = source
        self.store = store
        self.policy = policy
        self.ledger = ledger
        self.shutdown = shutdown or threading.Event()

    def execute(self, run: RunContext, *, retry_failed: bool = False) -> ExecutionSummary:
        summary = ExecutionSummary()

        for descriptor in self.store.load_descriptors(run):
            self._raise_if_cancelled(run)

            if retry_failed and descriptor.status is DescriptorStatus.FAILED:
                descriptor = descriptor.reopen()
                self.store.write_descriptor(run, descriptor)
                summary.reopened += 1
                logger.info("failed descriptor reopened for retry", extra={"key": descriptor.key, "run_id": run.run_id})

            if descriptor.status is not DescriptorStatus.PENDING:
                summary.already_terminal += 1
                continue

            finished, attempts = self._execute_descriptor(run, descriptor)
            summary.attempts[finished.key] = attempts
            if finished.status is DescriptorStatus.FAILED:
                summary.failed += 1
            elif finished.result and finished.result.rows_affected:
                summary.updated += 1
            else:
                summary.no_rows += 1

        logger.info(
            "query execution finished",
            extra={
                "run_id": run.run_id,
                "updated": summary.updated,
                "no_rows": summary.no_rows,
                "failed": summary.failed,
                "already_terminal": summary.already_terminal,
            },
        )
        return summary

    def _execute_descriptor(self, run: RunContext, descriptor: RecordDescriptor) -> tuple[RecordDescriptor, int]:
        attempt = 0
        while True:
            attempt += 1
            result = self._attempt(run, descriptor)

            if result.state is AttemptState.ROLLED_BACK_RETRY:
                if self.policy.attempts_remain(attempt):
                    delay = self.policy.delay_for(attempt)
                    logger.warning(
                        "transient failure, retrying",
                        extra={"key": descriptor.key, "attempt": attempt, "delay_seconds": delay, "error": result.error},
                    )
                    if self.shutdown.wait(delay):
                        self._raise_if_cancelled(run)
                    continue
                if result.connection_lost:
                    # Leave the descriptor pending so the next run picks it up.
                    raise DataSourceConnectionError(f"data source unavailable after {attempt} attempts: {result.error}")
                result = AttemptResult(
                    AttemptState.ROLLED_BACK_FAILED,
                    error=f"retries exhausted after {attempt} attempts: {result.error}",
                )

            return self._finish(run, descriptor, result), attempt

    def _attempt(self, run: RunContext, descriptor: RecordDescriptor) -> AttemptResult:
        try:
            with self.source.begin() as transaction:
                rows_affected = transaction.execute(descriptor.query)
                if self.shutdown.is_set():
                    transaction.rollback()
                    logger.warning("shutdown requested, statement rolled back", extra={"key": descriptor.key})
                    self._raise_if_cancelled(run)
                transaction.commit()
        except DataSourceConnectionError as exc:
            return AttemptResult(AttemptState.ROLLED_BACK_RETRY, error=str(exc), connection_lost=True)
        except TransientExecutionError as exc:
            return AttemptResult(AttemptState.ROLLED_BACK_RETRY, error=str(exc))
        except NonTransientExecutionError as exc:
            return AttemptResult(AttemptState.ROLLED_BACK_FAILED, error=str(exc))

        if rows_affected > 0:
            return AttemptResult(AttemptState.COMMITTED_SUCCESS, rows_affected=rows_affected)
        return AttemptResult(AttemptState.COMMITTED_ZERO_ROWS)

    def _finish(self, run: RunContext, descriptor: RecordDescriptor, result: AttemptResult) -> RecordDescriptor:
        if result.state is AttemptState.ROLLED_BACK_FAILED:
            message = result.error or "execution failed"
            failed = descriptor.fail(message)
            path = self.store.write_descriptor(run, failed)
            self.store.append_error(
                run,
                ErrorEntry(key=failed.key, descriptor=path.name, error=message, timestamp=failed.timestamp or utc_timestamp()),
            )
            logger.error("statement failed", extra={"key": failed.key, "error": message, "run_id": run.run_id})
            return failed

        completed = descriptor.complete(result.rows_affected)
        self.store.write_descriptor(run, completed)
        if self.ledger is not None:
            action = LedgerAction.UPDATED if result.rows_affected > 0 else LedgerAction.SKIPPED
            self.ledger.record(completed.key, action)
        if result.state is AttemptState.COMMITTED_ZERO_ROWS:
            logger.info("statement matched no rows", extra={"key": completed.key, "run_id": run.run_id})
        else:
            logger.info(
                "statement committed",
                extra={"key": completed.key, "rows_affected": result.rows_affected, "run_id": run.run_id},
            )
        return completed

    def _raise_if_cancelled(self, run: RunContext) -> None:
        if self.shutdown.is_set():
            raise RunCancelled(f"shutdown requested during run {run.run_id}")
