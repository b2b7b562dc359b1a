# FILE: app/services/billing_locks.py
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Sequence, TypeVar, Union

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import ConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyedLocks:
    """
    One mutex per key ("invoice:12", "stay:4"). Entries are dropped when no
    thread holds or waits on them.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}  # key -> [lock, users]

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] <= 0:
                self._locks.pop(key, None)

    @contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        lock = self._checkout(key)
        try:
            if not lock.acquire(timeout=max(timeout, 0)):
                logger.warning("Lock timeout key=%s after %.2fs", key, timeout)
                raise ConflictError(
                    f"{key} is being modified by another request, retry")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)

    def size(self) -> int:
        with self._guard:
            return len(self._locks)


_registry = KeyedLocks()


def invoice_key(invoice_id: int) -> str:
    return f"invoice:{int(invoice_id)}"


def stay_key(admission_id: int) -> str:
    return f"stay:{int(admission_id)}"


def patient_key(patient_id: int) -> str:
    return f"patient:{int(patient_id)}"


def bed_key(bed_id: int) -> str:
    return f"bed:{int(bed_id)}"


def series_key(prefix: str) -> str:
    return f"series:{prefix}"


@contextmanager
def hold_lock(keys: Union[str, Sequence[str]],
              timeout: float) -> Iterator[None]:
    """
    Acquire keys in the order given. Callers use a fixed order
    (stay, bed, invoice, series) so nested holders cannot deadlock.
    """
    if isinstance(keys, str):
        keys = [keys]
    keys = list(dict.fromkeys(keys))  # locks are not re-entrant
    if not keys:
        yield
        return
    with _registry.hold(keys[0], timeout):
        with hold_lock(list(keys[1:]), timeout):
            yield


def run_atomic(
    db: Session,
    key: Union[str, Sequence[str]],
    fn: Callable[[], T],
    *,
    timeout: float,
    retries: int = 1,
) -> T:
    """
    Run fn() under the keyed lock and commit.

    fn must re-read what it checks on every call: on a stale version
    (another process updated the row) the transaction is rolled back and fn
    is re-run up to `retries` times. Any other error rolls back and
    propagates unchanged; validation failures are never retried.
    """
    with hold_lock(key, timeout):
        attempt = 0
        while True:
            try:
                result = fn()
                db.commit()
                return result
            except StaleDataError:
                db.rollback()
                if attempt >= retries:
                    logger.warning("Version conflict key=%s, giving up", key)
                    raise ConflictError(
                        f"{key} was modified concurrently, re-read and retry")
                attempt += 1
                logger.warning("Version conflict key=%s, retry %s", key,
                               attempt)
            except Exception:
                db.rollback()
                raise
