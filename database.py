from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def _create_engine() -> Engine:
    settings = get_settings()
    if not settings.is_sqlite:
        return create_engine(settings.database_url, pool_pre_ping=True)
    # The scheduler thread and request handlers share the engine.
    eng = create_engine(
        settings.database_url, connect_args={"check_same_thread": False}
    )
    return configure_sqlite(eng)


def _enable_sqlite_pragmas(dbapi_conn, _record):
    # pysqlite opens transactions lazily, which breaks SAVEPOINT; BEGIN is
    # emitted explicitly from the "begin" hook instead.
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


def configure_sqlite(eng: Engine) -> Engine:
    event.listen(eng, "connect", _enable_sqlite_pragmas)
    event.listen(eng, "begin", _emit_begin)
    return eng


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
