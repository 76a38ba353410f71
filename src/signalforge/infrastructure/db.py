from __future__ import annotations
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from signalforge.config import get_settings


class Base(DeclarativeBase):
    pass


def _dsn() -> str:
    s = get_settings()
    if not s.database_url:
        raise RuntimeError("DATABASE_URL is required")
    return s.database_url


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


def enable_sqlite_savepoints(e):
    """pysqlite defers BEGIN on its own; take over so SAVEPOINT / ROLLBACK TO nest correctly."""
    if e.dialect.name != "sqlite":
        return

    @event.listens_for(e, "connect")
    def _connect(dbapi_conn, _record):
        dbapi_conn.isolation_level = None

    @event.listens_for(e, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")


engine = create_engine(_dsn(), **_engine_kwargs(_dsn()))
enable_sqlite_savepoints(engine)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def override_engine(e):  # test helper
    global engine
    engine = e
    # Rebind in place so modules that imported SessionLocal pick up the new engine
    SessionLocal.configure(bind=e)


def healthcheck() -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
        return True
