import threading
from contextlib import contextmanager
from typing import Set, Tuple

from staffpay.core.exceptions import ConcurrencyConflictError

class KeyedLockRegistry:
    """
    Per-entity mutual exclusion inside one process. Acquisition never waits:
    a held key means another caller is mid-transaction for that cycle or
    exit record, and the caller gets ConcurrencyConflictError.

    Only keys currently held are tracked, so the registry stays as small as
    the number of in-flight operations.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._held: Set[Tuple[str, str]] = set()

    @contextmanager
    def hold(self, entity_type: str, entity_id: str):
        key = (entity_type, entity_id)
        with self._guard:
            if key in self._held:
                raise ConcurrencyConflictError(entity_type, entity_id)
            self._held.add(key)
        try:
            yield
        finally:
            with self._guard:
                self._held.discard(key)

    def is_held(self, entity_type: str, entity_id: str) -> bool:
        with self._guard:
            return (entity_type, entity_id) in self._held

    def held_count(self) -> int:
        with self._guard:
            return len(self._held)

default_locks = KeyedLockRegistry()
