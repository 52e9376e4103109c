from contextlib import contextmanager
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from stockledger.config import DATABASE_URL
from stockledger.errors import ConcurrencyConflictError
from stockledger.events import discard_pending, dispatch_pending


logger = logging.getLogger(__name__)

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session):
    """Commit everything done in the block, or nothing.

    Events queued inside the block are dispatched after the commit succeeds.
    A lost optimistic version check anywhere in the block surfaces as
    ConcurrencyConflictError.
    """
    try:
        yield db
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        discard_pending(db)
        logger.warning("Transaction rolled back on a concurrent update: %s", exc)
        raise ConcurrencyConflictError("The data was modified concurrently; retry the operation.") from exc
    except Exception:
        db.rollback()
        discard_pending(db)
        raise
    dispatch_pending(db)
