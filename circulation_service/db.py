import math

from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker

from .models import Base


def lock_timeout_args(database_uri, lock_timeout):
    """Driver connect_args that bound how long a statement waits for a lock."""
    backend = make_url(database_uri).get_backend_name()
    if backend == "sqlite":
        # bounded wait on "database is locked"
        return {"timeout": lock_timeout, "check_same_thread": False}
    if backend == "postgresql":
        return {"options": f"-c lock_timeout={int(lock_timeout * 1000)}"}
    if backend in ("mysql", "mariadb"):
        # InnoDB counts whole seconds, minimum 1
        seconds = max(1, math.ceil(lock_timeout))
        return {"init_command": f"SET SESSION innodb_lock_wait_timeout={seconds}"}
    return {}


def make_engine(database_uri, lock_timeout=5.0, echo=False):
    connect_args = lock_timeout_args(database_uri, lock_timeout)
    engine = create_engine(database_uri, future=True, echo=echo, connect_args=connect_args)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def make_session_factory(engine, create_tables=True):
    if create_tables:
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)
