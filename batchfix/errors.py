class BatchFixError(Exception):
    """Base class for every error raised by batchfix."""


class ConfigurationError(BatchFixError, ValueError):
    pass


class DataSourceConnectionError(BatchFixError):
    """The data source cannot be reached. Aborts the current run."""


class PersistenceError(BatchFixError):
    """Run state could not be written or read back. Aborts the current run."""


class RunNotFoundError(BatchFixError):
    pass


class RunCancelled(BatchFixError):
    """Shutdown was requested while a run was in progress."""


class InvalidTransitionError(BatchFixError):
    pass


class RowRejectedError(BatchFixError):
    """A selection row could not be turned into a statement."""


class TemplateError(RowRejectedError):
    pass


class MalformedKeyError(RowRejectedError):
    pass


class StatementError(BatchFixError):
    pass


class StatementSyntaxError(StatementError):
    pass


class TransientExecutionError(StatementError):
    """Expected to go away when the same statement is retried."""


class NonTransientExecutionError(StatementError):
    pass
