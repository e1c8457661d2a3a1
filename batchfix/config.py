from dataclasses import dataclass
import os

from dotenv import load_dotenv

from batchfix.errors import ConfigurationError


load_dotenv()


DEFAULT_SELECTION_QUERY = "SELECT key_field, field1, field2 FROM sample_records WHERE condition = 't'"
DEFAULT_UPDATE_TEMPLATE = "UPDATE sample_records SET field1 = 'new_value' WHERE key_field = '{{key}}'"


@dataclass(frozen=True)
class FieldMapping:
    key: str
    reference: str
    derived: str


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    db_username: str
    db_password: str
    log_level: str
    results_dir: str
    processed_ledger_path: str
    selection_query: str
    update_template: str
    key_field: str
    zip_field: str
    county_field: str
    batch_size: int
    statement_timeout_seconds: float
    check_again_after_seconds: float
    max_attempts: int
    retry_backoff_seconds: float
    max_backoff_seconds: float

    @property
    def fields(self) -> FieldMapping:
        return FieldMapping(key=self.key_field, reference=self.zip_field, derived=self.county_field)


def _int_env(name: str, default: str, minimum: int) -> int:
    raw = os.getenv(name, default)
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_env(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative, got {value}")
    return value


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "batchfix"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./batchfix.db"),
        db_username=os.getenv("DB_USERNAME", ""),
        db_password=os.getenv("DB_PASSWORD", ""),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        results_dir=os.getenv("RESULTS_DIR", "./results"),
        processed_ledger_path=os.getenv("PROCESSED_LEDGER_PATH", "processed_records.json"),
        selection_query=os.getenv("SELECTION_QUERY", DEFAULT_SELECTION_QUERY),
        update_template=os.getenv("UPDATE_QUERY_TEMPLATE", DEFAULT_UPDATE_TEMPLATE),
        key_field=os.getenv("KEY_FIELD_NAME", "key_field"),
        zip_field=os.getenv("ZIP_FIELD_NAME", "zip_code"),
        county_field=os.getenv("COUNTY_FIELD_NAME", "county"),
        batch_size=_int_env("BATCH_SIZE", "100", minimum=1),
        statement_timeout_seconds=_float_env("TIMEOUT_SECONDS", "30"),
        check_again_after_seconds=_float_env("CHECK_AGAIN_AFTER", "1800"),
        max_attempts=_int_env("MAX_ATTEMPTS", "3", minimum=1),
        retry_backoff_seconds=_float_env("RETRY_BACKOFF_SECONDS", "1"),
        max_backoff_seconds=_float_env("MAX_BACKOFF_SECONDS", "30"),
    )
