import logging

from batchfix.errors import StatementError, StatementSyntaxError
from batchfix.gateway import DataSource
from batchfix.record_store import RecordStore
from batchfix.schemas import DescriptorStatus, ErrorEntry, RecordDescriptor, RunContext, ValidationSummary, utc_timestamp


logger = logging.getLogger(__name__)


def _balanced(statement: str) -> bool:
    in_single = False
    in_double = False
    depth = 0
    for char in statement:
        if char == "'" and not in_double:
            in_single = not in_single
        elif char == '"' and not in_single:
            in_double = not in_double
        elif in_single or in_double:
            continue
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                return False
    return not in_single and not in_double and depth == 0


def lint_statement(statement: str) -> None:
    """Cheap shape checks run before a statement reaches the database."""
    normalized = " ".join(statement.upper().split())
    if not normalized:
        raise StatementSyntaxError("statement is empty")

    if normalized.startswith("UPDATE "):
        if " SET " not in normalized or " WHERE " not in normalized:
            raise StatementSyntaxError("UPDATE must contain SET and WHERE")
    elif normalized.startswith("INSERT "):
        if " VALUES" not in normalized and " SELECT " not in normalized:
            raise StatementSyntaxError("INSERT must contain VALUES or SELECT")
    elif normalized.startswith("DELETE "):
        if " FROM " not in normalized:
            raise StatementSyntaxError("DELETE must contain FROM")
    else:
        raise StatementSyntaxError("statement must be an UPDATE, INSERT or DELETE")

    if not _balanced(statement):
        raise StatementSyntaxError("unbalanced quotes or parentheses")


def check_syntax(source: DataSource, statement: str) -> None:
    """Run ``statement`` in a transaction that is always rolled back."""
    lint_statement(statement)
    try:
        with source.begin() as transaction:
            try:
                transaction.execute(statement)
            finally:
                transaction.rollback()
    except StatementError as exc:
        raise StatementSyntaxError(f"{type(exc).__name__}: {exc}") from exc


class QueryValidator:
    def __init__(self, source: DataSource, store: RecordStore) -> None:
        self.source = source
        self.store = store

    def validate(self, run: RunContext) -> ValidationSummary:
        summary = ValidationSummary()
        for descriptor in self.store.load_descriptors(run, DescriptorStatus.PENDING):
            try:
                check_syntax(self.source, descriptor.query)
            except StatementSyntaxError as exc:
                self._record_failure(run, descriptor, str(exc))
                summary.invalid += 1
                continue

            self.store.write_descriptor(run, descriptor.annotate_syntax_ok())
            summary.valid += 1
            logger.debug("statement syntax ok", extra={"key": descriptor.key})

        logger.info(
            "query validation finished",
            extra={"run_id": run.run_id, "valid": summary.valid, "invalid": summary.invalid},
        )
        return summary

    def _record_failure(self, run: RunContext, descriptor: RecordDescriptor, message: str) -> None:
        failed = descriptor.fail(message)
        path = self.store.write_descriptor(run, failed)
        self.store.append_error(
            run,
            ErrorEntry(key=failed.key, descriptor=path.name, error=message, timestamp=failed.timestamp or utc_timestamp()),
        )
        logger.error("statement syntax error", extra={"key": descriptor.key, "error": message, "query": descriptor.query})
