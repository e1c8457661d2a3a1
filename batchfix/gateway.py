import logging
from typing import Protocol

from sqlalchemy import Connection, Engine
from sqlalchemy.exc import DBAPIError, DisconnectionError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from batchfix.errors import (
    DataSourceConnectionError,
    NonTransientExecutionError,
    StatementError,
    TransientExecutionError,
)


logger = logging.getLogger(__name__)

Row = dict[str, object]

# serialization failure, deadlock, lock not available, query canceled
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03", "57014"})
# connection exception
TRANSIENT_SQLSTATE_CLASSES = ("08",)
TRANSIENT_MESSAGE_MARKERS = (
    "database is locked",
    "lock wait",
    "lock timeout",
    "timeout",
    "timed out",
    "deadlock",
    "could not serialize",
    "server closed the connection",
    "connection reset",
    "connection refused",
    "lost connection",
)


class StatementTransaction(Protocol):
    def execute(self, statement: str) -> int: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def __enter__(self) -> "StatementTransaction": ...

    def __exit__(self, *exc_info: object) -> None: ...


class DataSource(Protocol):
    def select(self, query: str) -> list[Row]: ...

    def begin(self) -> StatementTransaction: ...


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return str(code) if code else None


def error_message(exc: BaseException) -> str:
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        return str(exc.orig).strip()
    return str(exc).strip()


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (DisconnectionError, PoolTimeoutError)):
        return True
    if not isinstance(exc, DBAPIError):
        return False
    if exc.connection_invalidated:
        return True

    sqlstate = _sqlstate(exc)
    if sqlstate:
        return sqlstate in TRANSIENT_SQLSTATES or sqlstate.startswith(TRANSIENT_SQLSTATE_CLASSES)

    if isinstance(exc, OperationalError):
        message = error_message(exc).lower()
        return any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS)
    return False


def classify_error(exc: BaseException) -> StatementError:
    message = error_message(exc)
    if is_transient(exc):
        return TransientExecutionError(message)
    return NonTransientExecutionError(message)


class SqlTransaction:
    """One connection holding one open transaction."""

    def __init__(self, connection: Connection, timeout_seconds: float) -> None:
        self._connection = connection
        self._timeout_seconds = timeout_seconds
        self._transaction = connection.begin()

    def execute(self, statement: str) -> int:
        try:
            self._apply_timeout()
            result = self._connection.exec_driver_sql(statement)
        except SQLAlchemyError as exc:
            raise classify_error(exc) from exc
        return max(result.rowcount, 0)

    def commit(self) -> None:
        try:
            self._transaction.commit()
        except SQLAlchemyError as exc:
            raise classify_error(exc) from exc

    def rollback(self) -> None:
        if self._transaction.is_active:
            self._transaction.rollback()

    def close(self) -> None:
        try:
            self.rollback()
        except SQLAlchemyError as exc:
            # The server drops an open transaction with its connection anyway.
            logger.warning("rollback on close failed", extra={"error": error_message(exc)})
        finally:
            self._connection.close()

    def _apply_timeout(self) -> None:
        if self._timeout_seconds <= 0:
            return
        if self._connection.dialect.name == "postgresql":
            milliseconds = int(self._timeout_seconds * 1000)
            self._connection.exec_driver_sql(f"SET LOCAL statement_timeout = {milliseconds}")

    def __enter__(self) -> "SqlTransaction":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class SqlGateway:
    def __init__(self, engine: Engine, *, batch_size: int = 100, timeout_seconds: float = 30) -> None:
        self.engine = engine
        self.batch_size = batch_size
        self.timeout_seconds = timeout_seconds

    def _connect(self) -> Connection:
        try:
            return self.engine.connect()
        except SQLAlchemyError as exc:
            raise DataSourceConnectionError(f"cannot connect to data source: {error_message(exc)}") from exc

    def select(self, query: str) -> list[Row]:
        rows: list[Row] = []
        with self._connect() as connection:
            try:
                result = connection.exec_driver_sql(query)
                for batch in result.partitions(self.batch_size):
                    rows.extend(dict(row._mapping) for row in batch)
                    logger.debug("fetched selection batch", extra={"batch_rows": len(batch), "total_rows": len(rows)})
            except SQLAlchemyError as exc:
                raise classify_error(exc) from exc
        return rows

    def begin(self) -> SqlTransaction:
        connection = self._connect()
        try:
            return SqlTransaction(connection, self.timeout_seconds)
        except SQLAlchemyError as exc:
            connection.close()
            raise DataSourceConnectionError(f"cannot open transaction: {error_message(exc)}") from exc
