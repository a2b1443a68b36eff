# backend/transactions.py
"""
Transaction coordinator for attempt state transitions.

Every mutating entry point runs as one unit: take the per-attempt lock,
open a session, re-read the attempt, decide, write, commit. The lock gives
at-most-one accepted transition per attempt inside this process; the
attempt row's version counter (see models.ExamAttempt) catches writers in
other processes, and SELECT ... FOR UPDATE does the same on databases that
support row locks.
"""

from contextlib import contextmanager
from typing import Callable, Hashable
import logging
import threading
import weakref

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from errors import AttemptConflictError

logger = logging.getLogger(__name__)


class _KeyedLock:
    """threading.Lock wrapper that can live in a WeakValueDictionary"""
    __slots__ = ("lock", "__weakref__")

    def __init__(self):
        self.lock = threading.Lock()

    def __enter__(self):
        self.lock.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.lock.release()
        return False


class AttemptLockRegistry:
    """
    One lock per key (usually an attempt id).

    Locks are held weakly: once no caller references a key's lock it is
    dropped, so the registry does not grow with the number of attempts ever
    seen. Different keys never contend.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = weakref.WeakValueDictionary()

    def lock_for(self, key: Hashable) -> _KeyedLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = _KeyedLock()
                self._locks[key] = lock
            return lock

    def __len__(self):
        return len(self._locks)


class TransactionCoordinator:
    """Runs read-decide-write units against a session factory"""

    def __init__(self, session_factory: Callable[[], Session],
                 registry: AttemptLockRegistry = None):
        self.session_factory = session_factory
        self.registry = registry or AttemptLockRegistry()

    @contextmanager
    def scope(self, key: Hashable = None):
        """
        Yield a session inside one transaction, serialized on `key`.

        Commits when the block exits cleanly; rolls back and re-raises
        otherwise. A concurrent-write detection (stale version) surfaces as
        AttemptConflictError so callers re-fetch instead of retrying blindly.
        """
        if key is None:
            with self._session() as db:
                yield db
            return

        with self.registry.lock_for(key):
            with self._session() as db:
                yield db

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except StaleDataError as e:
            db.rollback()
            logger.warning(f"Concurrent update detected, transaction rolled back: {e}")
            raise AttemptConflictError("Attempt was modified concurrently") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def attempt_scope(self, attempt_id: int):
        return self.scope(("attempt", attempt_id))
