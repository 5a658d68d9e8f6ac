"""
Process-wide datastore: engine, session factory and scoped transactions
"""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from common.error_handling import TransactionError
from common.settings import Settings, settings as default_settings
from common.tracing import get_current_trace_id

logger = logging.getLogger(__name__)


def _enable_sqlite_write_locking(engine: Engine) -> None:
    """Make every SQLite transaction take the write lock at BEGIN.

    pysqlite defers BEGIN until the first DML statement, so a budget check
    followed by an INSERT would not be serialized. Emitting BEGIN IMMEDIATE
    ourselves gives SQLite the same effect as SELECT ... FOR UPDATE.
    Foreign keys are enforced per connection, as MySQL does.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class DataStore:
    """Owns the connection pool; initialized at startup and disposed at shutdown."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("DataStore is not initialized")
        return self._engine

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    def init(self) -> "DataStore":
        if self._engine is not None:
            return self
        url = self.config.sqlalchemy_url
        if url.startswith("sqlite"):
            engine = create_engine(
                url,
                echo=self.config.db_echo,
                connect_args={"check_same_thread": False, "timeout": self.config.sqlite_busy_timeout},
            )
            _enable_sqlite_write_locking(engine)
        else:
            engine = create_engine(
                url,
                echo=self.config.db_echo,
                pool_pre_ping=True,
                pool_size=self.config.db_pool_size,
                max_overflow=self.config.db_max_overflow,
                isolation_level="READ COMMITTED",
            )
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        logger.info(f"✅ Datastore initialized ({engine.dialect.name})")
        return self

    def dispose(self) -> None:
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        self._session_factory = None
        logger.info("Datastore disposed")

    def create_schema(self) -> None:
        from allocation_service.models import Base

        Base.metadata.create_all(bind=self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Datastore ping failed: {e}")
            return False

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Read-only unit of work; never commits."""
        if self._session_factory is None:
            raise RuntimeError("DataStore is not initialized")
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Read failed: {e}", extra={"trace_id": get_current_trace_id()})
            raise TransactionError("Database read failed", original_error=e) from e
        finally:
            session.close()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """begin -> body -> commit, or rollback on any error; the connection is always released."""
        if self._session_factory is None:
            raise RuntimeError("DataStore is not initialized")
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Transaction rolled back: {e}", extra={"trace_id": get_current_trace_id()})
            raise TransactionError("Database transaction failed", original_error=e) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
