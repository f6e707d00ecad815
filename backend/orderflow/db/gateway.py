import hashlib
import logging
import os
import threading
from contextlib import contextmanager, nullcontext
from typing import Any, Callable, Dict, Iterator, Optional, Sequence, TypeVar

from filelock import FileLock, Timeout
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from orderflow.config import settings
from orderflow.errors import DomainError, ErrorKind

log = logging.getLogger(__name__)

SERIALIZABLE = "SERIALIZABLE"

T = TypeVar("T")

_locks: Dict[str, FileLock] = {}
_locks_guard = threading.Lock()


def _shared_lock(path: str) -> FileLock:
    # one FileLock per path so the same thread can re-enter it
    with _locks_guard:
        lock = _locks.get(path)
        if lock is None:
            lock = FileLock(path)
            _locks[path] = lock
        return lock


def _is_serialization_failure(exc: OperationalError) -> bool:
    if getattr(exc.orig, "pgcode", None) == "40001":
        return True
    text = str(exc.orig).lower()
    return "could not serialize" in text or "database is locked" in text


class PersistenceGateway:
    """
    Transactional access to the order/stock store.

    Engines receive a gateway in their constructor and open one transaction
    per public operation. SQLite only has a single writer and no real
    SERIALIZABLE level, so write transactions against it are also serialised
    through a file lock keyed by the database file.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        lock_dir: Optional[str] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.lock_timeout = (
            settings.LOCK_TIMEOUT_SECONDS if lock_timeout is None else lock_timeout
        )
        self._lock = None
        bind = session_factory.kw.get("bind")
        if bind is not None and bind.dialect.name == "sqlite":
            lock_dir = lock_dir or settings.LOCK_DIR
            os.makedirs(lock_dir, exist_ok=True)
            digest = hashlib.sha1(str(bind.url).encode("utf-8")).hexdigest()[:16]
            self._lock = _shared_lock(
                os.path.join(lock_dir, f"orderflow_{digest}.lock")
            )

    def _write_lock(self):
        if self._lock is None:
            return nullcontext()
        try:
            return self._lock.acquire(timeout=self.lock_timeout)
        except Timeout:
            raise DomainError(
                ErrorKind.CONCURRENT_MODIFICATION,
                "Could not acquire write lock; try again",
            )

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Plain session for read-only projections."""
        s = self.session_factory()
        try:
            yield s
        finally:
            s.close()

    @contextmanager
    def transaction(self, isolation: str = SERIALIZABLE) -> Iterator[Session]:
        """
        Run the body inside one transaction at ``isolation``.

        Commits when the body returns, rolls back on any exception. Storage
        level serialisation failures surface as CONCURRENT_MODIFICATION.
        """
        with self._write_lock():
            s = self.session_factory()
            try:
                s.connection(execution_options={"isolation_level": isolation})
                yield s
                s.commit()
            except OperationalError as exc:
                s.rollback()
                if _is_serialization_failure(exc):
                    raise DomainError(
                        ErrorKind.CONCURRENT_MODIFICATION,
                        "Transaction could not be serialized",
                    ) from exc
                raise
            except BaseException:
                s.rollback()
                raise
            finally:
                s.close()

    def run_transaction(
        self, fn: Callable[[Session], T], isolation: str = SERIALIZABLE
    ) -> T:
        with self.transaction(isolation) as s:
            return fn(s)

    @staticmethod
    def conditional_update(
        session: Session, model, criteria: Sequence[Any], values: Dict[str, Any]
    ) -> int:
        """UPDATE model SET values WHERE criteria; returns the matched row count."""
        stmt = (
            update(model)
            .where(*criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return session.execute(stmt).rowcount
