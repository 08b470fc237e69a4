"""
In-process single-flight coordination.

The first caller for a key runs the work; concurrent callers for the same key
wait on the leader's future and get its value or its exception. The entry is
dropped as soon as the leader finishes, whatever the outcome, so a later
independent call starts a fresh flight.
"""

import threading
from concurrent.futures import Future
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

T = TypeVar("T")


class SingleFlightGate:
    def __init__(self):
        self._lock = threading.Lock()
        self._flights: Dict[str, Future] = {}

    def do(self, key: str, fn: Callable[[], T], timeout: Optional[float] = None) -> Tuple[T, bool]:
        """
        Run ``fn`` once per concurrent burst for ``key``.

        Returns:
            (value, shared) where shared is False for the leader, True for followers

        Raises:
            Whatever ``fn`` raised, in the leader and in every follower
        """
        with self._lock:
            flight = self._flights.get(key)
            leader = flight is None
            if leader:
                flight = Future()
                self._flights[key] = flight

        if not leader:
            return flight.result(timeout=timeout), True

        try:
            value = fn()
        except BaseException as exc:
            self._release(key)
            flight.set_exception(exc)
            raise
        self._release(key)
        flight.set_result(value)
        return value, False

    def _release(self, key: str):
        with self._lock:
            self._flights.pop(key, None)

    def in_flight(self) -> List[str]:
        with self._lock:
            return list(self._flights)
