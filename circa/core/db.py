
import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import scoped_session, sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from circa.configs import DB_URI, DEBUG, SQLITE_BUSY_TIMEOUT
from circa.core.exceptions import CircaError, DatabaseWriteError

logger = logging.getLogger(__name__)


def make_engine(uri=DB_URI, echo=DEBUG):
    engine_kwargs = {'echo': echo}
    in_memory = ':memory:' in uri or uri == 'sqlite://'
    if uri.startswith('sqlite'):
        engine_kwargs['connect_args'] = {'check_same_thread': False}
        # One shared connection, otherwise every thread sees its own empty db
        if in_memory:
            engine_kwargs['poolclass'] = StaticPool
        else:
            engine_kwargs['connect_args']['timeout'] = SQLITE_BUSY_TIMEOUT
    else:
        engine_kwargs['client_encoding'] = 'utf8'
    engine = create_engine(uri, **engine_kwargs)
    if uri.startswith('sqlite') and not in_memory:
        serialize_writers(engine)
    return engine


def serialize_writers(engine):
    """Starts every SQLite transaction with `BEGIN IMMEDIATE`.

    A second writer then waits for the file lock instead of failing
    halfway through its transaction with "database is locked".
    """
    @event.listens_for(engine, 'connect')
    def on_connect(dbapi_connection, connection_record):
        # hand transaction control to the listener below
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def on_begin(connection):
        connection.exec_driver_sql('BEGIN IMMEDIATE')


engine = make_engine()
session = scoped_session(sessionmaker(
    bind=engine, autocommit=False, autoflush=False))


class CircaBase:
    @classmethod
    def get_many(cls, db, offset=None, limit=None):
        return db.query(cls).offset(offset).limit(limit).all()


Base = declarative_base(cls=CircaBase)


@contextmanager
def atomic(db):
    """Runs the enclosed writes as one transaction.

    Commits when the block finishes, rolls back on any error. Datastore
    failures surface as `DatabaseWriteError`; domain errors pass through.
    """
    try:
        yield db
        db.commit()
    except CircaError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseWriteError(f"Failed to write to the database: {str(e)}.") from e
    except Exception:
        db.rollback()
        raise


def release(db):
    """Hands a session back; scoped sessions drop their thread-local state."""
    if isinstance(db, scoped_session):
        db.remove()


def init(bind=engine):
    try:
        # models must be imported so their tables register with Base
        from circa.core import models  # noqa: F401
        Base.metadata.create_all(bind=bind)
        return session
    except Exception as e:
        logger.warning(f"[WARNING] Database initialization failed: {e}")
