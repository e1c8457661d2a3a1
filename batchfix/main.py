import argparse
from datetime import datetime
import logging
from pathlib import Path
import threading

from batchfix.config import Settings, get_settings
from batchfix.database import build_engine, build_session_factory
from batchfix.errors import BatchFixError, DataSourceConnectionError, RunCancelled
from batchfix.gateway import SqlGateway
from batchfix.monitor import KeypressListener, MonitorLoop, WakeSignal, shutdown_handlers
from batchfix.pipeline import CORRECTIONS, PipelineRunner, format_summary
from batchfix.record_store import ProcessedLedger, RecordStore
from batchfix.sample_data import clean_sample_data, generate_sample_data
from batchfix.schemas import RunSummary


logger = logging.getLogger(__name__)

LOG_FILE_NAME = "batch_process.log"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Batch-correct records in a relational database")
    parser.add_argument("--clean", action="store_true", help="remove previous run directories before starting")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("generate", help="generate update statements for the selected records")
    subparsers.add_parser("test", help="generate statements and check their syntax without committing (default)")

    execute_parser = subparsers.add_parser("execute", help="execute pending statements of a previous run")
    execute_parser.add_argument("--run-id", help="run to execute, defaults to the latest run")
    execute_parser.add_argument("--retry-failed", action="store_true", help="also retry statements that failed")

    subparsers.add_parser("run", help="generate and execute continuously")

    subparsers.add_parser("update-county-codes", help="correct county codes from ZIP codes (3-digit FIPS)")
    countyfp_parser = subparsers.add_parser(
        "update-county-code-from-countyfp",
        help="correct county codes from ZIP codes (2-digit county code)",
    )
    countyfp_parser.add_argument("--yes", action="store_true", help="execute without asking for confirmation")

    setup_parser = subparsers.add_parser("setup-test", help="insert sample records for trying the pipeline")
    setup_parser.add_argument("--count", type=int, default=1000, help="number of sample records")
    setup_parser.add_argument("--seed", type=int, default=None, help="random seed for reproducible data")
    subparsers.add_parser("clean-test", help="delete sample records")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "test"
    return args


def configure_logging(settings: Settings) -> None:
    log_dir = Path(settings.results_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=[logging.StreamHandler(), logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8")],
    )


def confirm(question: str) -> bool:
    try:
        answer = input(f"{question} (Y/N): ")
    except EOFError:
        return False
    return answer.strip().upper().startswith("Y")


def run_correction(runner: PipelineRunner, command: str, *, assume_yes: bool) -> RunSummary:
    run, summary = runner.generate_corrections(command)
    if summary.correction and summary.correction.rejected:
        print(
            f"{len(summary.correction.rejected)} rows rejected, the selection query must return the "
            "key, ZIP and county columns"
        )
    if not summary.correction or summary.correction.mismatched == 0:
        print("No county code updates needed.")
        return runner.finish(run, summary)

    print(f"Generated {summary.correction.mismatched} county code update queries")
    needs_confirmation = command == "update-county-code-from-countyfp" and not assume_yes
    if needs_confirmation and not confirm("Do you want to execute the update queries now?"):
        print(f"Update queries were generated but not executed. Run 'execute --run-id {run.run_id}' to apply them.")
        return runner.finish(run, summary)
    return runner.execute_corrections(run, summary)


def run_continuous(runner: PipelineRunner, settings: Settings, shutdown: threading.Event, wake: WakeSignal) -> None:
    def cycle() -> None:
        try:
            summary = runner.run("run")
        except DataSourceConnectionError as exc:
            # Pending descriptors are picked up again by the next cycle.
            logger.error("cycle aborted, data source unavailable", extra={"error": str(exc)})
            print(f"status=aborted error={exc}")
            return
        print(format_summary(summary))

    def announce(deadline: datetime) -> None:
        print(f"Batch processing complete, checking again at: {deadline.astimezone():%Y-%m-%d %H:%M:%S}")
        print("(press 'R' to check again now)")

    monitor = MonitorLoop(
        cycle,
        interval_seconds=settings.check_again_after_seconds,
        shutdown=shutdown,
        wake=wake,
        on_sleep=announce,
    )
    with KeypressListener(wake):
        monitor.run()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings)

    store = RecordStore(settings.results_dir)
    if args.clean:
        store.clean()

    engine = build_engine(settings)
    if args.command == "setup-test":
        inserted = generate_sample_data(build_session_factory(engine, create_tables=True), args.count, seed=args.seed)
        print(f"status=succeeded inserted={inserted}")
        return
    if args.command == "clean-test":
        deleted = clean_sample_data(build_session_factory(engine, create_tables=True))
        print(f"status=succeeded deleted={deleted}")
        return

    shutdown = threading.Event()
    wake = WakeSignal()
    summary: RunSummary | None = None

    with shutdown_handlers(shutdown, wake):
        try:
            ledger = ProcessedLedger.open(settings.processed_ledger_path)
            gateway = SqlGateway(engine, batch_size=settings.batch_size, timeout_seconds=settings.statement_timeout_seconds)
            runner = PipelineRunner(settings, gateway, store, ledger, shutdown=shutdown)

            if args.command == "run":
                run_continuous(runner, settings, shutdown, wake)
                if shutdown.is_set():
                    raise RunCancelled("shutdown requested in continuous mode")
            elif args.command in CORRECTIONS:
                summary = run_correction(runner, args.command, assume_yes=getattr(args, "yes", False))
            else:
                summary = runner.run(
                    args.command,
                    run_id=getattr(args, "run_id", None),
                    retry_failed=getattr(args, "retry_failed", False),
                )
        except RunCancelled as exc:
            logger.warning("run cancelled", extra={"reason": str(exc)})
            print("status=cancelled")
            raise SystemExit(130) from exc
        except BatchFixError as exc:
            logger.exception("run aborted", extra={"command": args.command})
            print(f"status=aborted error={exc}")
            raise SystemExit(1) from exc
        finally:
            engine.dispose()

    if summary is None:
        return
    status = "failed" if summary.has_failures else "succeeded"
    print(f"status={status} {format_summary(summary)}")
    if summary.has_failures:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
