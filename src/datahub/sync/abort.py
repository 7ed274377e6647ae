"""
Cooperative cancellation for running operations.

Runs register their operation key when they start and call checkpoint() at
safe points (between network calls, before commit). abort() with no key
flags every registered run; abort(key) flags only the named one. Flags die
with the registration, so an abort never leaks into a later run.
"""
import logging
import threading
from typing import Dict, List, Optional

from datahub.errors import AbortedByUser

logger = logging.getLogger(__name__)


class AbortSignal:
    def __init__(self):
        self._flags: Dict[str, bool] = {}
        self._lock = threading.Lock()  # abort() may come from an API thread

    def register(self, key: str) -> None:
        with self._lock:
            self._flags[str(key)] = False

    def release(self, key: str) -> None:
        with self._lock:
            self._flags.pop(str(key), None)

    def abort(self, key: Optional[str] = None) -> int:
        """Flag one named run, or all registered runs. Returns how many were flagged."""
        with self._lock:
            if key is not None:
                targets = [str(key)] if str(key) in self._flags else []
            else:
                targets = list(self._flags)
            for target in targets:
                self._flags[target] = True
        logger.info("Abort signal sent to %d active operation(s)", len(targets))
        return len(targets)

    def is_aborted(self, key: str) -> bool:
        with self._lock:
            return self._flags.get(str(key), False)

    def checkpoint(self, key: str) -> None:
        """Raise AbortedByUser if the run was flagged."""
        if self.is_aborted(key):
            raise AbortedByUser(str(key))

    @property
    def active(self) -> List[str]:
        with self._lock:
            return sorted(self._flags)
