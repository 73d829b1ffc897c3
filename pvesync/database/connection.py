"""
Session management for the state store.
"""
import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Transactional scope: commit on success, roll back and re-raise on error."""
    session = factory()
    try:
        logger.debug("DB session opened")
        yield session
        session.commit()
        logger.debug("DB session committed")
    except Exception:
        session.rollback()
        logger.debug("DB session rolled back due to error")
        raise
    finally:
        session.close()
        logger.debug("DB session closed")
