import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from common.error_handling import LoyaltyError, StorageError
from loyalty_service.models import Base

logger = logging.getLogger(__name__)

def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})

        # pysqlite defers BEGIN until the first write, which defeats the
        # read-validate-write pattern; take the write lock up front instead.
        @event.listens_for(engine, "connect")
        def _disable_pysqlite_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine
    return create_engine(url, pool_pre_ping=True, isolation_level="READ COMMITTED")

def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)

def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
    logger.info(f"✅ Schema ready on {engine.url.render_as_string(hide_password=True)}")

@contextmanager
def storage_errors(action: str):
    """Wrap driver and SQLAlchemy failures in StorageError with context."""
    try:
        yield
    except LoyaltyError:
        raise
    except SQLAlchemyError as e:
        raise StorageError(f"failed to {action}", original_error=e) from e
