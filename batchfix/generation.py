from collections.abc import Iterable, Mapping
import logging
import re

from batchfix.errors import MalformedKeyError, RowRejectedError, TemplateError
from batchfix.record_store import ProcessedLedger, RecordStore
from batchfix.schemas import GenerationSummary, RecordDescriptor, RejectedRow, RunContext


logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")
KEY_PLACEHOLDER = "key"
_POSITIONAL = re.compile(r"field(\d+)", re.IGNORECASE)


def extract_key(row: Mapping[str, object], key_field: str) -> str:
    if key_field not in row:
        raise MalformedKeyError(f"key field {key_field!r} missing from selection row")
    value = row[key_field]
    if value is None or not str(value).strip():
        raise MalformedKeyError(f"key field {key_field!r} is empty")
    return str(value).strip()


def placeholders(template: str) -> list[str]:
    return PLACEHOLDER.findall(template)


def _as_sql_text(value: object) -> str:
    if value is None:
        return ""
    return str(value).replace("'", "''")


def _resolve(name: str, row: Mapping[str, object], key: str, key_field: str) -> object:
    if name == KEY_PLACEHOLDER:
        return key
    if name in row:
        return row[name]

    lowered = name.lower()
    for column, value in row.items():
        if column.lower() == lowered:
            return value

    positional = _POSITIONAL.fullmatch(name)
    if positional:
        others = [value for column, value in row.items() if column != key_field]
        index = int(positional.group(1))
        if 1 <= index <= len(others):
            return others[index - 1]

    raise TemplateError(f"placeholder {{{{{name}}}}} has no matching column (columns: {', '.join(row)})")


def render_statement(template: str, row: Mapping[str, object], key_field: str) -> tuple[str, str]:
    """Return ``(key, statement)`` for one selection row.

    ``{{key}}`` is the key field value, ``{{column}}`` any selected column
    (case-insensitive), ``{{fieldN}}`` the N-th non-key column.

    Every value has its single quotes doubled, which suits templates that
    wrap placeholders in single quotes. Templates quoting with ``"`` or
    feeding in text that is already escaped will see the doubled quotes
    in the rendered statement. ``None`` renders as empty text.
    """
    key = extract_key(row, key_field)
    statement = PLACEHOLDER.sub(lambda match: _as_sql_text(_resolve(match.group(1), row, key, key_field)), template)
    return key, statement


class QueryGenerator:
    def __init__(self, store: RecordStore, ledger: ProcessedLedger, *, key_field: str) -> None:
        self.store = store
        self.ledger = ledger
        self.key_field = key_field

    def generate(self, rows: Iterable[Mapping[str, object]], template: str, run: RunContext) -> GenerationSummary:
        summary = GenerationSummary()
        seen: set[str] = set()

        for index, row in enumerate(rows):
            summary.selected += 1
            key: str | None = None
            try:
                key = extract_key(row, self.key_field)
                if key in self.ledger or key in seen:
                    summary.skipped += 1
                    logger.debug("key already handled", extra={"key": key, "run_id": run.run_id})
                    continue
                _, statement = render_statement(template, row, self.key_field)
            except RowRejectedError as exc:
                summary.rejected.append(RejectedRow(row_index=index, key=key, reason=str(exc)))
                logger.warning("row rejected", extra={"row_index": index, "key": key, "reason": str(exc)})
                continue

            self.store.write_descriptor(run, RecordDescriptor.pending(key, statement))
            seen.add(key)
            summary.generated += 1

        logger.info(
            "query generation finished",
            extra={
                "run_id": run.run_id,
                "selected": summary.selected,
                "generated": summary.generated,
                "skipped": summary.skipped,
                "rejected": len(summary.rejected),
            },
        )
        return summary
