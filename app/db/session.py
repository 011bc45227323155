# app/db/session.py
from typing import Dict

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


# ---------- TENANT DB ENGINES (one per hospital) ----------

_tenant_engines: Dict[str, Engine] = {}


def _engine_kwargs(db_uri: str) -> dict:
    if db_uri.startswith("sqlite"):
        return {"future": True, "connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_recycle": 280,
        "pool_size": 10,
        "max_overflow": 20,
        "future": True,
    }


def enable_sqlite_savepoints(eng: Engine) -> None:
    """
    pysqlite opens transactions lazily, which breaks SAVEPOINT.
    Let SQLAlchemy emit BEGIN itself (recipe from the SQLAlchemy sqlite docs).
    """

    @event.listens_for(eng, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(db_uri: str, **extra) -> Engine:
    kwargs = _engine_kwargs(db_uri)
    kwargs.update(extra)
    eng = create_engine(db_uri, **kwargs)
    if db_uri.startswith("sqlite"):
        enable_sqlite_savepoints(eng)
    return eng


def get_or_create_tenant_engine(db_uri: str) -> Engine:
    eng = _tenant_engines.get(db_uri)
    if eng is None:
        eng = build_engine(db_uri)
        _tenant_engines[db_uri] = eng
    return eng


def make_session_factory(eng: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=eng,
        future=True,
    )


def create_tenant_session(db_uri: str) -> Session:
    """
    Return a new SQLAlchemy Session bound to the given tenant DB URI.
    """
    eng = get_or_create_tenant_engine(db_uri)
    return make_session_factory(eng)()
