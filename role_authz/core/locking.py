"""Critical sections around a role record.

Owner-touching algorithms must not interleave: two concurrent elections
could both observe "no owner yet". They all enter the same critical section
on the Owner role before reading owner state.
"""

import threading
from contextlib import contextmanager
from typing import ContextManager, Iterator, Protocol

from sqlalchemy.orm import Session

from role_authz.config import settings
from role_authz.core.exceptions import StoreUnavailableException
from role_authz.core.logging import get_logger
from role_authz.core.transaction import in_transaction, on_transaction_end, transaction
from role_authz.models.role import Role
from role_authz.repositories.role_repository import RoleRepository

logger = get_logger(__name__)


class RoleLock(Protocol):
    """Strategy for serializing work on a single role"""

    def critical_section(self, db: Session, role_name: str) -> ContextManager[Role | None]:
        """
        Open (or join) a transaction holding an exclusive lock on the role.

        Yields the locked Role, or None if no role has that name. The lock
        is held until the outermost transaction ends.
        """
        ...


class RowLevelRoleLock:
    """
    Lock the role row with SELECT ... FOR UPDATE.

    Serializes callers across processes. The row lock is released by the
    database when the transaction commits or rolls back.
    """

    @contextmanager
    def critical_section(self, db: Session, role_name: str) -> Iterator[Role | None]:
        with transaction(db):
            role = RoleRepository(db).get_by_name(role_name, for_update=True)
            yield role


class ProcessRoleLock:
    """
    Serialize callers within this process with one re-entrant lock per role.

    For databases without row locks (SQLite). The lock is taken before the
    transaction begins and released only after it ends, so the next caller
    always sees committed state. Callers must take it before their first
    write, otherwise they would hold the SQLite write lock while waiting.

    Waiting longer than timeout seconds raises StoreUnavailableException.
    """

    _registry_lock = threading.Lock()
    _locks: dict[str, threading.RLock] = {}

    def __init__(self, timeout: float | None = None):
        self.timeout = settings.LOCK_TIMEOUT_SECONDS if timeout is None else timeout

    @classmethod
    def _lock_for(cls, role_name: str) -> threading.RLock:
        with cls._registry_lock:
            return cls._locks.setdefault(role_name, threading.RLock())

    @contextmanager
    def critical_section(self, db: Session, role_name: str) -> Iterator[Role | None]:
        lock = self._lock_for(role_name)
        if not lock.acquire(timeout=self.timeout):
            logger.warning("Timed out waiting for role lock", role=role_name, timeout=self.timeout)
            raise StoreUnavailableException(
                f"Timed out after {self.timeout}s waiting for lock on role '{role_name}'"
            )
        if in_transaction(db):
            # Joining an outer unit of work: hold the lock until it ends
            on_transaction_end(db, lock.release)
            with transaction(db):
                yield RoleRepository(db).get_by_name(role_name)
            return

        try:
            with transaction(db):
                yield RoleRepository(db).get_by_name(role_name)
        finally:
            lock.release()


# Dialects that honour SELECT ... FOR UPDATE
ROW_LOCK_DIALECTS = {"postgresql", "mysql", "mariadb", "oracle", "mssql"}


def role_lock_for(db: Session) -> RoleLock:
    """Pick the lock strategy supported by the session's database"""
    bind = db.get_bind()
    dialect = bind.dialect.name if bind is not None else ""
    if dialect in ROW_LOCK_DIALECTS:
        return RowLevelRoleLock()
    logger.debug("Row locks unavailable, using process lock", dialect=dialect)
    return ProcessRoleLock()
