import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from .config import DATABASE_URL
from .errors import PersistenceError

logger = logging.getLogger(__name__)

Base = declarative_base()


def make_engine(url: str):
    """Engine for ``url``. In-memory SQLite gets one shared connection so every session sees the same data."""
    if "sqlite" in url:
        connect_args = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(url, connect_args=connect_args, poolclass=StaticPool)
        return create_engine(url, connect_args=connect_args)
    return create_engine(url, pool_pre_ping=True)


def make_session_factory(engine):
    # Records returned by the services outlive their session.
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


engine = make_engine(DATABASE_URL)
SessionLocal = make_session_factory(engine)


def init_db(bind=None):
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def session_scope(factory=None):
    """
    Unit of work: commit on success, roll back on any error.

    Store failures surface as PersistenceError. Nothing is retried here, so a
    caller that wants backoff wraps the service call.
    """
    db = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Store operation failed: %s", e)
        raise PersistenceError(str(e)) from e
    except BaseException:
        db.rollback()
        raise
    finally:
        db.close()
