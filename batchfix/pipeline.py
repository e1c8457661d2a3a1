import logging
import threading

from batchfix.config import Settings
from batchfix.corrector import LOOKUPS, Corrector, build_selection_query, extract_table_name
from batchfix.errors import DataSourceConnectionError, RunCancelled, RunNotFoundError, TransientExecutionError
from batchfix.execution import ExecutionEngine
from batchfix.gateway import DataSource, Row
from batchfix.generation import QueryGenerator
from batchfix.record_store import ProcessedLedger, RecordStore
from batchfix.retry import RetryExhaustedError, RetryPolicy, run_with_retries
from batchfix.schemas import RunContext, RunSummary
from batchfix.validation import QueryValidator


logger = logging.getLogger(__name__)

MODES = ("generate", "test", "execute", "run")
CORRECTIONS = {
    "update-county-codes": "fips",
    "update-county-code-from-countyfp": "county_code",
}


class PipelineRunner:
    def __init__(
        self,
        settings: Settings,
        source: DataSource,
        store: RecordStore,
        ledger: ProcessedLedger,
        *,
        shutdown: threading.Event | None = None,
    ) -> None:
        self.settings = settings
        self.source = source
        self.store = store
        self.ledger = ledger
        self.shutdown = shutdown or threading.Event()
        self.policy = RetryPolicy(
            max_attempts=settings.max_attempts,
            backoff_seconds=settings.retry_backoff_seconds,
            max_backoff_seconds=settings.max_backoff_seconds,
        )

    def run(self, mode: str, *, run_id: str | None = None, retry_failed: bool = False) -> RunSummary:
        if mode not in MODES:
            raise ValueError(f"unknown mode: {mode}")

        if mode == "execute":
            run = self.store.get_run(run_id) if run_id else self.store.latest_run()
            if run is None:
                raise RunNotFoundError(f"no previous run in {self.store.root}, run 'generate' first")
            summary = RunSummary(run_id=run.run_id, mode=mode)
            summary.execution = self._engine(self._ledger_for(run)).execute(run, retry_failed=retry_failed)
            return self.finish(run, summary)

        run = self.store.create_run(mode)
        summary = RunSummary(run_id=run.run_id, mode=mode)
        summary.generation = QueryGenerator(self.store, self.ledger, key_field=self.settings.key_field).generate(
            self.select(self.settings.selection_query), self.settings.update_template, run
        )
        if mode == "test":
            summary.validation = QueryValidator(self.source, self.store).validate(run)
        elif mode == "run":
            summary.execution = self._engine(self.ledger).execute(run)
        return self.finish(run, summary)

    def generate_corrections(self, command: str) -> tuple[RunContext, RunSummary]:
        lookup = LOOKUPS[CORRECTIONS[command]]
        table = extract_table_name(self.settings.selection_query)
        if command == "update-county-codes":
            query = build_selection_query(table, self.settings.fields)
        else:
            query = self.settings.selection_query

        run = self.store.create_run(command)
        summary = RunSummary(run_id=run.run_id, mode=command)
        corrector = Corrector(self.store, self.settings.fields, lookup, table=table)
        summary.correction = corrector.generate(self.select(query), run)
        return run, summary

    def execute_corrections(self, run: RunContext, summary: RunSummary) -> RunSummary:
        # Corrections are checked against live values, the processed ledger stays untouched.
        summary.execution = self._engine(None).execute(run)
        return self.finish(run, summary)

    def select(self, query: str) -> list[Row]:
        def on_failure(attempt: int, exc: Exception) -> None:
            logger.warning("selection failed", extra={"attempt": attempt, "error": str(exc)})

        try:
            rows = run_with_retries(
                lambda: self.source.select(query),
                policy=self.policy,
                should_retry=lambda exc: isinstance(exc, (DataSourceConnectionError, TransientExecutionError)),
                on_attempt_failure=on_failure,
                wait=self._wait,
            )
        except RetryExhaustedError as exc:
            # Re-raise the underlying classified error, it decides whether the run aborts.
            raise exc.__cause__ from None
        logger.info("selection returned rows", extra={"rows": len(rows)})
        return rows

    def _wait(self, seconds: float) -> None:
        if self.shutdown.wait(seconds):
            raise RunCancelled("shutdown requested while waiting to retry selection")

    def _ledger_for(self, run: RunContext) -> ProcessedLedger | None:
        created_for = self.store.run_mode(run)
        if created_for in CORRECTIONS:
            logger.info("correction run, processed ledger not updated", extra={"run_id": run.run_id, "mode": created_for})
            return None
        return self.ledger

    def _engine(self, ledger: ProcessedLedger | None) -> ExecutionEngine:
        return ExecutionEngine(self.source, self.store, policy=self.policy, ledger=ledger, shutdown=self.shutdown)

    def finish(self, run: RunContext, summary: RunSummary) -> RunSummary:
        if run.error_ledger_path.exists():
            summary.error_ledger = str(run.error_ledger_path)
        self.store.write_summary(run, summary.to_dict())
        return summary


def format_summary(summary: RunSummary) -> str:
    parts = [f"run_id={summary.run_id}", f"mode={summary.mode}"]
    if summary.generation:
        generation = summary.generation
        parts.append(
            f"selected={generation.selected} generated={generation.generated} "
            f"skipped={generation.skipped} rejected={len(generation.rejected)}"
        )
    if summary.correction:
        correction = summary.correction
        parts.append(
            f"checked={correction.checked} mismatched={correction.mismatched} "
            f"already_correct={correction.already_correct} unmatched={len(correction.unmatched)} "
            f"rejected={len(correction.rejected)}"
        )
    if summary.validation:
        parts.append(f"syntax_ok={summary.validation.valid} syntax_failed={summary.validation.invalid}")
    if summary.execution:
        execution = summary.execution
        parts.append(f"updated={execution.updated} no_rows={execution.no_rows} failed={execution.failed}")
    if summary.error_ledger:
        parts.append(f"errors={summary.error_ledger}")
    return " ".join(parts)
