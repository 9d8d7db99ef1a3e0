from collections.abc import Generator
from pathlib import Path

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .core.config import settings


def _ensure_sqlite_path(url: str) -> None:
    if not url.startswith("sqlite"):
        return

    parsed = make_url(url)
    database = parsed.database
    if not database or database == ":memory:":
        return

    path = Path(database)
    path.parent.mkdir(parents=True, exist_ok=True)


def enable_sqlite_savepoints(engine: Engine) -> None:
    """Let pysqlite emit BEGIN itself so SAVEPOINT (``begin_nested``) works."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # noqa: ARG001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(connection):
        connection.exec_driver_sql("BEGIN")


def _create_engine(url: str) -> Engine:
    connect_args: dict[str, object] = {}
    engine_kwargs: dict[str, object] = {
        "echo": settings.debug,
        "future": True,
        "pool_pre_ping": True,
    }

    parsed = make_url(url)
    backend = parsed.get_backend_name()
    driver = parsed.get_driver_name()

    if backend == "sqlite":
        connect_args["check_same_thread"] = False
        _ensure_sqlite_path(url)
    else:
        # Recycle long-lived connections so pooler idle timeouts do not kill
        # them in the middle of a client run.
        engine_kwargs["pool_recycle"] = 300

        if backend.startswith("postgresql"):
            connect_args.setdefault("keepalives", 1)
            connect_args.setdefault("keepalives_idle", 120)
            connect_args.setdefault("keepalives_interval", 30)
            connect_args.setdefault("keepalives_count", 5)
            # Transaction poolers reject PREPARE.
            if driver == "psycopg":
                connect_args.setdefault("prepare_threshold", None)

    if connect_args:
        engine_kwargs["connect_args"] = connect_args

    engine = create_engine(url, **engine_kwargs)
    if backend == "sqlite":
        enable_sqlite_savepoints(engine)
    return engine


def _create_session_factory(engine) -> sessionmaker[Session]:
    # expire_on_commit is disabled so job rows stay readable after checkpoints.
    return sessionmaker(
        bind=engine,
        autoflush=True,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def _build_db_components(url: str):
    engine = _create_engine(url)
    session_factory = _create_session_factory(engine)
    return engine, session_factory


engine, SessionLocal = _build_db_components(settings.resolved_database_url)
Base = declarative_base()

# The source store is owned by the CRM/outreach tooling; the engine only reads it.
if settings.resolved_source_database_url == settings.resolved_database_url:
    source_engine, SourceSessionLocal = engine, SessionLocal
else:
    source_engine, SourceSessionLocal = _build_db_components(
        settings.resolved_source_database_url
    )
SourceBase = declarative_base()


def _ensure_column(engine, table: str, column: str, definition: str) -> None:
    inspector = inspect(engine)
    columns = {col["name"] for col in inspector.get_columns(table)}
    if column in columns:
        return
    with engine.begin() as connection:
        connection.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {definition}"))


def _apply_schema_updates(bind) -> None:
    dialect_name = bind.dialect.name
    json_type = "JSONB" if dialect_name == "postgresql" else "JSON"
    timestamp_type = (
        "TIMESTAMP WITH TIME ZONE" if dialect_name == "postgresql" else "TIMESTAMP"
    )
    _ensure_column(bind, "processing_job", "stats", json_type)
    _ensure_column(bind, "processing_job", "result", json_type)
    _ensure_column(bind, "processing_job", "last_checkpoint_at", timestamp_type)
    _ensure_column(bind, "attributed_domain", "dispute_reason", "TEXT")
    _ensure_column(bind, "attributed_domain", "dispute_submitted_at", timestamp_type)
    _ensure_column(bind, "attributed_domain", "dispute_resolved_at", timestamp_type)
    _ensure_column(bind, "client_config", "sign_ups_mode", "VARCHAR(20) NOT NULL DEFAULT 'per_event'")
    _ensure_column(bind, "client_config", "meetings_mode", "VARCHAR(20) NOT NULL DEFAULT 'per_event'")
    _ensure_column(bind, "client_config", "paying_mode", "VARCHAR(20) NOT NULL DEFAULT 'per_domain'")
    _ensure_column(bind, "client_config", "hard_match_positive_replies", "INTEGER NOT NULL DEFAULT 0")
    _ensure_column(bind, "client_config", "soft_match_positive_replies", "INTEGER NOT NULL DEFAULT 0")


def ping(bind) -> bool:
    with bind.connect() as connection:
        connection.execute(text("SELECT 1"))
    return True


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def init_db(bind=None) -> None:
    from . import models  # noqa: F401

    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    _apply_schema_updates(bind)
