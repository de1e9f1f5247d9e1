"""
Decision Evaluation - Per-Decision Leases.

In-process exclusive right to evaluate one decision. Two
evaluations of the same id never overlap inside a process;
different ids proceed in parallel.

Leases are re-entrant for the holding thread (a review action
that holds the lease may trigger an evaluation of the same
decision). Across processes the version-checked write in the
repository is what prevents lost updates.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional

from core.exceptions import EvaluationLeaseTimeout


logger = logging.getLogger(__name__)


@dataclass
class _LeaseEntry:
    lock: threading.RLock = field(default_factory=threading.RLock)
    refs: int = 0


class DecisionLeaseManager:
    """Keyed re-entrant locks, dropped when nobody holds or waits."""

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[str, _LeaseEntry] = {}

    @contextmanager
    def lease(self, decision_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        """
        Hold the lease for `decision_id` for the duration of the block.

        Raises:
            EvaluationLeaseTimeout: Not acquired within `timeout` seconds
        """
        with self._guard:
            entry = self._entries.get(decision_id)
            if entry is None:
                entry = _LeaseEntry()
                self._entries[decision_id] = entry
            entry.refs += 1

        try:
            acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
            if not acquired:
                logger.warning(f"Lease timeout: decision={decision_id} | timeout={timeout}s")
                raise EvaluationLeaseTimeout(decision_id, timeout)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    del self._entries[decision_id]

    def is_leased(self, decision_id: str) -> bool:
        with self._guard:
            return decision_id in self._entries

    @property
    def active_count(self) -> int:
        with self._guard:
            return len(self._entries)
