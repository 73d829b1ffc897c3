"""
Database engine configuration for the SQLite state store.
"""
import logging
from pathlib import Path
from typing import Union

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)


def create_store_engine(db_path: Union[str, Path], busy_timeout: float = 30.0) -> Engine:
    """
    Create an engine for the state database at ``db_path``.

    Foreign keys are enforced on every connection and the journal runs in WAL
    mode so readers never block on an in-flight commit. pysqlite's implicit
    transaction handling is disabled and replaced by an explicit BEGIN, so a
    multi-table read inside one session sees a single consistent snapshot.
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("Initializing state database at %s", path)

    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": busy_timeout},
        pool_pre_ping=True,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.execute("PRAGMA journal_mode = WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


def ensure_schema(engine: Engine) -> None:
    """Create database tables if they do not exist yet.

    This is safe to run repeatedly; the Alembic environment describes the
    same schema for installs managed through migrations.
    """
    from .models import Base

    Base.metadata.create_all(engine)
    logger.info("Database schema ensured (create_all executed)")
