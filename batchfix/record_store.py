from dataclasses import asdict
from datetime import UTC, datetime, timedelta
import hashlib
import json
import logging
import os
from pathlib import Path
import re
import shutil
import tempfile
import threading

from batchfix.errors import PersistenceError, RunNotFoundError
from batchfix.schemas import (
    DescriptorStatus,
    ErrorEntry,
    LedgerAction,
    ProcessedEntry,
    RecordDescriptor,
    RunContext,
    utc_timestamp,
)


logger = logging.getLogger(__name__)

RUN_PREFIX = "run_"
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def write_json_atomic(path: Path, payload: object) -> None:
    """Write JSON next to ``path`` and rename it into place.

    Readers never observe a half-written file, which is what makes an
    interrupted run resumable.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(suffix=".tmp", prefix=path.stem + "_", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as outfile:
                json.dump(payload, outfile, indent=2, sort_keys=True)
                outfile.write("\n")
                outfile.flush()
                os.fsync(outfile.fileno())
            os.replace(temp_path, path)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
    except OSError as exc:
        raise PersistenceError(f"failed to write {path}: {exc}") from exc


def read_json(path: Path) -> object:
    try:
        with path.open("r", encoding="utf-8") as infile:
            return json.load(infile)
    except (OSError, json.JSONDecodeError) as exc:
        raise PersistenceError(f"failed to read {path}: {exc}") from exc


def _run_id(stamp: datetime) -> str:
    return f"{RUN_PREFIX}{stamp.strftime('%Y%m%dT%H%M%S_%f')}"


def descriptor_filename(key: str) -> str:
    safe = _UNSAFE_FILENAME_CHARS.sub("_", key)
    if safe != key:
        # Different keys can sanitize to the same name, keep them apart.
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:8]
        safe = f"{safe}-{digest}"
    return f"{safe}.json"


class RecordStore:
    """Run directories, per-key descriptor files and the per-run error ledger."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        self._lock = threading.Lock()

    def create_run(self, mode: str = "generate") -> RunContext:
        stamp = datetime.now(UTC)
        latest = self.latest_run()
        run_id = _run_id(stamp)
        # Run ids stay strictly increasing even when the clock does not move.
        while (latest is not None and run_id <= latest.run_id) or (self.root / run_id).exists():
            stamp += timedelta(microseconds=1)
            run_id = _run_id(stamp)

        run = RunContext(run_id=run_id, directory=self.root / run_id)
        try:
            run.queries_dir.mkdir(parents=True)
        except OSError as exc:
            raise PersistenceError(f"failed to create run directory {run.directory}: {exc}") from exc
        write_json_atomic(run.metadata_path, {"run_id": run_id, "mode": mode, "created_at": utc_timestamp()})
        logger.info("run created", extra={"run_id": run_id, "mode": mode, "directory": str(run.directory)})
        return run

    def list_runs(self) -> list[RunContext]:
        if not self.root.exists():
            return []
        return [
            RunContext(run_id=path.name, directory=path)
            for path in sorted(self.root.iterdir())
            if path.is_dir() and path.name.startswith(RUN_PREFIX)
        ]

    def latest_run(self) -> RunContext | None:
        runs = self.list_runs()
        return runs[-1] if runs else None

    def get_run(self, run_id: str) -> RunContext:
        directory = self.root / run_id
        if not run_id.startswith(RUN_PREFIX) or not directory.is_dir():
            raise RunNotFoundError(f"run not found: {run_id}")
        return RunContext(run_id=run_id, directory=directory)

    def run_mode(self, run: RunContext) -> str | None:
        """Mode the run was created for, None for runs without metadata."""
        if not run.metadata_path.exists():
            return None
        payload = read_json(run.metadata_path)
        if not isinstance(payload, dict):
            raise PersistenceError(f"run metadata {run.metadata_path} is not an object")
        mode = payload.get("mode")
        return str(mode) if mode is not None else None

    def clean(self) -> int:
        removed = 0
        for run in self.list_runs():
            shutil.rmtree(run.directory)
            removed += 1
        logger.info("cleaned previous runs", extra={"removed_runs": removed, "root": str(self.root)})
        return removed

    def descriptor_path(self, run: RunContext, key: str) -> Path:
        return run.queries_dir / descriptor_filename(key)

    def has_descriptor(self, run: RunContext, key: str) -> bool:
        return self.descriptor_path(run, key).exists()

    def write_descriptor(self, run: RunContext, descriptor: RecordDescriptor) -> Path:
        path = self.descriptor_path(run, descriptor.key)
        write_json_atomic(path, descriptor.to_dict())
        return path

    def read_descriptor(self, run: RunContext, key: str) -> RecordDescriptor:
        return self._load_descriptor(self.descriptor_path(run, key))

    def load_descriptors(self, run: RunContext, status: DescriptorStatus | None = None) -> list[RecordDescriptor]:
        if not run.queries_dir.exists():
            return []
        descriptors = [self._load_descriptor(path) for path in sorted(run.queries_dir.glob("*.json"))]
        if status is None:
            return descriptors
        return [descriptor for descriptor in descriptors if descriptor.status is status]

    def _load_descriptor(self, path: Path) -> RecordDescriptor:
        payload = read_json(path)
        try:
            return RecordDescriptor.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"malformed descriptor file {path}: {exc}") from exc

    def append_error(self, run: RunContext, entry: ErrorEntry) -> None:
        with self._lock:
            entries = self._read_error_payload(run)
            entries.append(asdict(entry))
            write_json_atomic(run.error_ledger_path, entries)

    def read_errors(self, run: RunContext) -> list[ErrorEntry]:
        return [ErrorEntry(**entry) for entry in self._read_error_payload(run)]

    def _read_error_payload(self, run: RunContext) -> list[dict[str, str]]:
        if not run.error_ledger_path.exists():
            return []
        payload = read_json(run.error_ledger_path)
        if not isinstance(payload, list):
            raise PersistenceError(f"error ledger {run.error_ledger_path} is not a list")
        return payload

    def write_summary(self, run: RunContext, summary: dict[str, object]) -> None:
        write_json_atomic(run.summary_path, summary)


class ProcessedLedger:
    """Keys handled by earlier runs.

    Opened once per process and flushed after every mutation, so it is
    always the single source of truth for "already handled".
    """

    def __init__(self, path: Path | str, entries: list[ProcessedEntry] | None = None) -> None:
        self.path = Path(path)
        self._entries: list[ProcessedEntry] = list(entries or [])
        self._keys = {entry.key: entry for entry in self._entries}
        self._lock = threading.Lock()

    @classmethod
    def open(cls, path: Path | str) -> "ProcessedLedger":
        path = Path(path)
        if not path.exists():
            return cls(path)

        payload = read_json(path)
        try:
            entries = [
                ProcessedEntry(key=str(item["key"]), timestamp=str(item["timestamp"]), action=LedgerAction(item["action"]))
                for item in payload["processed"]
            ]
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"malformed processed ledger {path}: {exc}") from exc
        logger.info("processed ledger loaded", extra={"path": str(path), "entries": len(entries)})
        return cls(path, entries)

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._entries)

    def action_for(self, key: str) -> LedgerAction | None:
        entry = self._keys.get(key)
        return entry.action if entry else None

    def record(self, key: str, action: LedgerAction) -> ProcessedEntry:
        with self._lock:
            entry = ProcessedEntry(key=key, timestamp=utc_timestamp(), action=action)
            self._entries.append(entry)
            self._keys[key] = entry
            self._flush()
            return entry

    def _flush(self) -> None:
        write_json_atomic(
            self.path,
            {"processed": [{"key": e.key, "timestamp": e.timestamp, "action": e.action.value} for e in self._entries]},
        )
