from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

from batchfix.errors import InvalidTransitionError


def utc_timestamp() -> str:
    return datetime.now(UTC).isoformat()


class DescriptorStatus(StrEnum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"


class ResultOutcome(StrEnum):
    SYNTAX_OK = "syntax_ok"
    SUCCESS_UPDATED = "success_updated"
    SUCCESS_NO_ROWS_AFFECTED = "success_no_rows_affected"
    ERROR = "error"


class LedgerAction(StrEnum):
    SKIPPED = "skipped"
    UPDATED = "updated"


@dataclass(frozen=True)
class DescriptorResult:
    outcome: ResultOutcome
    rows_affected: int | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {"outcome": self.outcome.value, "rows_affected": self.rows_affected, "message": self.message}

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> "DescriptorResult":
        rows = payload.get("rows_affected")
        message = payload.get("message")
        return cls(
            outcome=ResultOutcome(str(payload["outcome"])),
            rows_affected=int(rows) if rows is not None else None,
            message=str(message) if message is not None else None,
        )


@dataclass(frozen=True)
class RecordDescriptor:
    key: str
    query: str
    status: DescriptorStatus = DescriptorStatus.PENDING
    result: DescriptorResult | None = None
    timestamp: str | None = None

    @classmethod
    def pending(cls, key: str, query: str) -> "RecordDescriptor":
        return cls(key=key, query=query, timestamp=utc_timestamp())

    @property
    def is_terminal(self) -> bool:
        return self.status is not DescriptorStatus.PENDING

    def _transition(self, status: DescriptorStatus, result: DescriptorResult) -> "RecordDescriptor":
        if self.is_terminal:
            raise InvalidTransitionError(f"descriptor {self.key!r} is already {self.status.value}")
        return replace(self, status=status, result=result, timestamp=utc_timestamp())

    def annotate_syntax_ok(self) -> "RecordDescriptor":
        return self._transition(DescriptorStatus.PENDING, DescriptorResult(ResultOutcome.SYNTAX_OK))

    def complete(self, rows_affected: int) -> "RecordDescriptor":
        outcome = ResultOutcome.SUCCESS_UPDATED if rows_affected > 0 else ResultOutcome.SUCCESS_NO_ROWS_AFFECTED
        return self._transition(DescriptorStatus.COMPLETED, DescriptorResult(outcome, rows_affected=rows_affected))

    def fail(self, message: str) -> "RecordDescriptor":
        return self._transition(DescriptorStatus.FAILED, DescriptorResult(ResultOutcome.ERROR, message=message))

    def reopen(self) -> "RecordDescriptor":
        # Operator-requested retry of a failed statement, the only way out of a terminal state.
        if self.status is not DescriptorStatus.FAILED:
            raise InvalidTransitionError(f"only failed descriptors can be reopened, {self.key!r} is {self.status.value}")
        return replace(self, status=DescriptorStatus.PENDING, result=None, timestamp=utc_timestamp())

    def to_dict(self) -> dict[str, object]:
        return {
            "key": self.key,
            "query": self.query,
            "status": self.status.value,
            "result": self.result.to_dict() if self.result else None,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> "RecordDescriptor":
        result = payload.get("result")
        timestamp = payload.get("timestamp")
        return cls(
            key=str(payload["key"]),
            query=str(payload["query"]),
            status=DescriptorStatus(str(payload["status"])),
            result=DescriptorResult.from_dict(result) if isinstance(result, dict) else None,
            timestamp=str(timestamp) if timestamp is not None else None,
        )


@dataclass(frozen=True)
class ErrorEntry:
    key: str
    descriptor: str
    error: str
    timestamp: str


@dataclass(frozen=True)
class ProcessedEntry:
    key: str
    timestamp: str
    action: LedgerAction


@dataclass(frozen=True)
class RunContext:
    run_id: str
    directory: Path

    @property
    def queries_dir(self) -> Path:
        return self.directory / "queries"

    @property
    def error_ledger_path(self) -> Path:
        return self.directory / "errors.json"

    @property
    def summary_path(self) -> Path:
        return self.directory / "summary.json"

    @property
    def metadata_path(self) -> Path:
        return self.directory / "run.json"


@dataclass(frozen=True)
class RejectedRow:
    row_index: int
    key: str | None
    reason: str


@dataclass
class GenerationSummary:
    selected: int = 0
    generated: int = 0
    skipped: int = 0
    rejected: list[RejectedRow] = field(default_factory=list)


@dataclass
class ValidationSummary:
    valid: int = 0
    invalid: int = 0


@dataclass
class ExecutionSummary:
    updated: int = 0
    no_rows: int = 0
    failed: int = 0
    already_terminal: int = 0
    reopened: int = 0
    attempts: dict[str, int] = field(default_factory=dict)


@dataclass
class CorrectionSummary:
    checked: int = 0
    mismatched: int = 0
    already_correct: int = 0
    unmatched: list[str] = field(default_factory=list)
    rejected: list[RejectedRow] = field(default_factory=list)


@dataclass
class RunSummary:
    run_id: str
    mode: str
    generation: GenerationSummary | None = None
    validation: ValidationSummary | None = None
    execution: ExecutionSummary | None = None
    correction: CorrectionSummary | None = None
    error_ledger: str | None = None

    @property
    def has_failures(self) -> bool:
        if self.validation and self.validation.invalid:
            return True
        return bool(self.execution and self.execution.failed)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)
