from collections.abc import Callable, Iterable, Mapping
import logging
import re

from batchfix.config import FieldMapping
from batchfix.errors import RowRejectedError
from batchfix.generation import extract_key, render_statement
from batchfix.record_store import RecordStore
from batchfix.schemas import CorrectionSummary, RecordDescriptor, RejectedRow, RunContext
from batchfix.zip_county import county_code_for_zip, fips_code_for_zip


logger = logging.getLogger(__name__)

Lookup = Callable[[object], str | None]

EXPECTED_PLACEHOLDER = "expected"
_FROM_CLAUSE = re.compile(r"\bFROM\s+(.+?)(?:\s+(?:WHERE|LIMIT|ORDER\s+BY|GROUP\s+BY)\b|;|$)", re.IGNORECASE | re.DOTALL)

# variant name -> lookup used to compute the expected county value
LOOKUPS: dict[str, Lookup] = {
    "fips": fips_code_for_zip,
    "county_code": county_code_for_zip,
}


def extract_table_name(selection_query: str, default: str = "table_name") -> str:
    match = _FROM_CLAUSE.search(selection_query.strip())
    if not match:
        return default
    return match.group(1).strip()


def build_selection_query(table: str, fields: FieldMapping) -> str:
    return f"SELECT {fields.key}, {fields.reference}, {fields.derived} FROM {table} WHERE {fields.reference} IS NOT NULL"


def build_update_template(table: str, fields: FieldMapping) -> str:
    return (
        f"UPDATE {table} SET {fields.derived} = '{{{{{EXPECTED_PLACEHOLDER}}}}}' "
        f"WHERE {fields.key} = '{{{{key}}}}'"
    )


def _text(value: object) -> str:
    return "" if value is None else str(value).strip()


def _column(row: Mapping[str, object], name: str) -> object:
    if name in row:
        return row[name]
    lowered = name.lower()
    for column, value in row.items():
        if column.lower() == lowered:
            return value
    raise RowRejectedError(f"column {name!r} missing from selection row")


class Corrector:
    def __init__(self, store: RecordStore, fields: FieldMapping, lookup: Lookup, *, table: str) -> None:
        self.store = store
        self.fields = fields
        self.lookup = lookup
        self.template = build_update_template(table, fields)

    def generate(self, rows: Iterable[Mapping[str, object]], run: RunContext) -> CorrectionSummary:
        summary = CorrectionSummary()

        for index, row in enumerate(rows):
            key: str | None = None
            try:
                key = extract_key(row, self.fields.key)
                reference = _column(row, self.fields.reference)
                current = _text(_column(row, self.fields.derived))
            except RowRejectedError as exc:
                summary.rejected.append(RejectedRow(row_index=index, key=key, reason=str(exc)))
                logger.warning("row rejected", extra={"row_index": index, "key": key, "reason": str(exc)})
                continue

            if not _text(reference):
                continue
            summary.checked += 1

            expected = self.lookup(reference)
            if expected is None:
                summary.unmatched.append(key)
                logger.info("no lookup match", extra={"key": key, "reference": _text(reference)})
                continue
            if current == expected:
                summary.already_correct += 1
                continue

            try:
                _, statement = render_statement(self.template, {**row, EXPECTED_PLACEHOLDER: expected}, self.fields.key)
            except RowRejectedError as exc:
                summary.rejected.append(RejectedRow(row_index=index, key=key, reason=str(exc)))
                logger.warning("row rejected", extra={"row_index": index, "key": key, "reason": str(exc)})
                continue

            self.store.write_descriptor(run, RecordDescriptor.pending(key, statement))
            summary.mismatched += 1
            logger.info(
                "correction generated",
                extra={"key": key, "reference": _text(reference), "current": current, "expected": expected},
            )

        logger.info(
            "correction scan finished",
            extra={
                "run_id": run.run_id,
                "checked": summary.checked,
                "mismatched": summary.mismatched,
                "already_correct": summary.already_correct,
                "unmatched": len(summary.unmatched),
            },
        )
        return summary
