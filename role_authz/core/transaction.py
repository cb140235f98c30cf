"""Transaction scopes with deferred after-commit callbacks."""

from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session

from role_authz.core.exceptions import StoreUnavailableException
from role_authz.core.logging import get_logger

logger = get_logger(__name__)

_DEPTH_KEY = "role_authz.transaction_depth"
_AFTER_COMMIT_KEY = "role_authz.after_commit"
_ON_END_KEY = "role_authz.on_transaction_end"


def in_transaction(db: Session) -> bool:
    """Check if a transaction() scope is open on this session"""
    return db.info.get(_DEPTH_KEY, 0) > 0


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """
    Run a block as one unit of work.

    The outermost scope commits on success and rolls back on any exception.
    Nested scopes join the outer one, so an error anywhere aborts the whole
    unit. Callbacks registered with after_commit() run once the outermost
    scope has committed and are dropped on rollback.

    Usage:
        with transaction(db):
            repo.create_no_commit(role)
            after_commit(db, lambda: publisher.publish(event))

    Raises:
        StoreUnavailableException: If the database fails (lost connection,
            lock wait timeout). The work is rolled back and may be retried.
    """
    depth = db.info.get(_DEPTH_KEY, 0)
    db.info[_DEPTH_KEY] = depth + 1
    try:
        yield db
        if depth == 0:
            db.commit()
    except Exception as exc:
        if depth == 0:
            db.rollback()
            db.info.pop(_AFTER_COMMIT_KEY, None)
            if isinstance(exc, (OperationalError, InterfaceError)):
                logger.warning("Transaction rolled back after store failure", error=str(exc))
                raise StoreUnavailableException(str(exc)) from exc
        raise
    finally:
        db.info[_DEPTH_KEY] = depth
        if depth == 0:
            _run_callbacks(db, _ON_END_KEY)

    if depth == 0:
        _run_callbacks(db, _AFTER_COMMIT_KEY)


def after_commit(db: Session, callback: Callable[[], None]) -> None:
    """
    Defer a callback until the enclosing transaction commits.

    Outside a transaction() scope the callback runs immediately.
    """
    if not in_transaction(db):
        callback()
        return
    db.info.setdefault(_AFTER_COMMIT_KEY, []).append(callback)


def on_transaction_end(db: Session, callback: Callable[[], None]) -> None:
    """Run a callback when the outermost transaction ends, committed or not"""
    if not in_transaction(db):
        callback()
        return
    db.info.setdefault(_ON_END_KEY, []).append(callback)


def _run_callbacks(db: Session, key: str) -> None:
    for callback in db.info.pop(key, []):
        callback()
