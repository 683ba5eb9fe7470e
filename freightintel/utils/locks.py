"""Per-shipment single-writer locks.

Two layers: an in-process keyed lock (threads in this worker) and a
SELECT ... FOR UPDATE row lock on the shipment (other workers). SQLite
ignores FOR UPDATE, which is fine for the single-process test setup.

Registry entries are reference counted and dropped when the last holder or
waiter leaves, so a long backfill does not keep one lock per shipment alive.
"""

import threading
from contextlib import contextmanager

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import Shipment

_registry_lock = threading.Lock()
# shipment id -> [lock, holders + waiters]
_locks: dict[int, list] = {}


def _checkout(shipment_id: int) -> threading.RLock:
    with _registry_lock:
        entry = _locks.get(shipment_id)
        if entry is None:
            entry = _locks[shipment_id] = [threading.RLock(), 0]
        entry[1] += 1
        return entry[0]


def _checkin(shipment_id: int) -> None:
    with _registry_lock:
        entry = _locks[shipment_id]
        entry[1] -= 1
        if entry[1] == 0:
            del _locks[shipment_id]


@contextmanager
def shipment_lock(db: Session, shipment_id: int):
    """Hold the shipment exclusively for the duration of the block. Reentrant."""
    lock = _checkout(shipment_id)
    try:
        with lock:
            db.execute(select(Shipment.id).where(Shipment.id == shipment_id).with_for_update())
            yield
    finally:
        _checkin(shipment_id)
