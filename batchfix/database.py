from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from batchfix.config import Settings
from batchfix.db_models import Base


def resolve_database_url(settings: Settings) -> str:
    url = make_url(settings.database_url)
    if settings.db_username:
        url = url.set(username=settings.db_username)
    if settings.db_password:
        url = url.set(password=settings.db_password)
    return url.render_as_string(hide_password=False)


def build_engine(settings: Settings) -> Engine:
    database_url = resolve_database_url(settings)
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        # SQLite has no statement timeout, the busy timeout bounds lock waits instead.
        connect_args["timeout"] = settings.statement_timeout_seconds

    return create_engine(database_url, future=True, pool_pre_ping=True, connect_args=connect_args)


def build_session_factory(engine: Engine, *, create_tables: bool = False) -> sessionmaker[Session]:
    if create_tables:
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
