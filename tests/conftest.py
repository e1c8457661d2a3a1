from collections.abc import Callable, Generator
from pathlib import Path

import pytest
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from batchfix.config import Settings
from batchfix.database import build_engine, build_session_factory
from batchfix.db_models import SampleRecord
from batchfix.errors import DataSourceConnectionError
from batchfix.gateway import SqlGateway
from batchfix.record_store import ProcessedLedger, RecordStore


class FakeTransaction:
    def __init__(self, source: "FakeDataSource") -> None:
        self.source = source
        self.state = "open"

    def execute(self, statement: str) -> int:
        self.source.executed.append(statement)
        outcomes = self.source.outcomes.get(statement)
        outcome = outcomes.pop(0) if outcomes else self.source.default_rows
        if self.source.on_execute:
            self.source.on_execute(statement)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def commit(self) -> None:
        self.state = "committed"
        self.source.commits.append(self.source.executed[-1])

    def rollback(self) -> None:
        if self.state == "open":
            self.state = "rolled_back"
            self.source.rollbacks += 1

    def __enter__(self) -> "FakeTransaction":
        self.source.open_transactions += 1
        self.source.max_open_transactions = max(self.source.max_open_transactions, self.source.open_transactions)
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.rollback()
        self.source.open_transactions -= 1


class FakeDataSource:
    """Scripted data source: each statement pops its next outcome, an int or an exception."""

    def __init__(self) -> None:
        self.rows: list[dict[str, object]] = []
        self.outcomes: dict[str, list[int | Exception]] = {}
        self.default_rows = 1
        self.connect_failures = 0
        self.executed: list[str] = []
        self.commits: list[str] = []
        self.rollbacks = 0
        self.open_transactions = 0
        self.max_open_transactions = 0
        self.on_execute: Callable[[str], None] | None = None

    def script(self, statement: str, outcomes: list[int | Exception]) -> None:
        self.outcomes[statement] = list(outcomes)

    def select(self, query: str) -> list[dict[str, object]]:
        return [dict(row) for row in self.rows]

    def begin(self) -> FakeTransaction:
        if self.connect_failures:
            self.connect_failures -= 1
            raise DataSourceConnectionError("cannot connect to data source: connection refused")
        return FakeTransaction(self)


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "results").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="batchfix",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        db_username="",
        db_password="",
        log_level="INFO",
        results_dir=str(temp_workspace / "results"),
        processed_ledger_path=str(temp_workspace / "processed_records.json"),
        selection_query="SELECT key_field, field1, field2 FROM sample_records WHERE condition = 't'",
        update_template="UPDATE sample_records SET field1 = 'fixed_{{field2}}' WHERE key_field = '{{key}}'",
        key_field="key_field",
        zip_field="zip_code",
        county_field="county",
        batch_size=2,
        statement_timeout_seconds=5,
        check_again_after_seconds=3600,
        max_attempts=3,
        retry_backoff_seconds=0,
        max_backoff_seconds=0,
    )


@pytest.fixture()
def store(test_settings: Settings) -> RecordStore:
    return RecordStore(test_settings.results_dir)


@pytest.fixture()
def ledger(test_settings: Settings) -> ProcessedLedger:
    return ProcessedLedger.open(test_settings.processed_ledger_path)


@pytest.fixture()
def fake_source() -> FakeDataSource:
    return FakeDataSource()


@pytest.fixture()
def db_engine(test_settings: Settings) -> Generator[Engine, None, None]:
    engine = build_engine(test_settings)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine: Engine) -> sessionmaker[Session]:
    return build_session_factory(db_engine, create_tables=True)


@pytest.fixture()
def seed_records(session_factory: sessionmaker[Session]) -> Callable[..., None]:
    def _seed(*records: dict[str, str | None]) -> None:
        with session_factory() as db:
            for record in records:
                db.add(SampleRecord(**record))
            db.commit()

    return _seed


@pytest.fixture()
def gateway(db_engine: Engine, session_factory: sessionmaker[Session], test_settings: Settings) -> SqlGateway:
    return SqlGateway(db_engine, batch_size=test_settings.batch_size, timeout_seconds=test_settings.statement_timeout_seconds)
