import threading
from contextlib import contextmanager
from typing import Dict

_registry_lock = threading.Lock()
_campaign_locks: Dict[int, threading.RLock] = {}


def get_campaign_lock(campaign_id: int) -> threading.RLock:
    with _registry_lock:
        lock = _campaign_locks.get(campaign_id)
        if lock is None:
            lock = threading.RLock()
            _campaign_locks[campaign_id] = lock
        return lock


@contextmanager
def campaign_lock(campaign_id: int):
    """Serialize read-modify-write sections that touch one campaign's turn or session counter."""
    lock = get_campaign_lock(campaign_id)
    with lock:
        yield
