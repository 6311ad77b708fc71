import logging
import threading
from collections import deque
from typing import Callable, Deque, TypeVar

from .utils import DEFAULT_MAX_CONCURRENT

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestGate:
    """
    Bounded-concurrency admission for calls to a rate-limited provider.

    At most ``limit`` tasks run at once. Extra callers block in a FIFO queue;
    when a task finishes (normally or by raising) its slot is handed directly
    to the oldest waiter, so nobody can jump the queue. There is no
    cancellation: an admitted task always runs to completion.
    """

    def __init__(self, limit: int = DEFAULT_MAX_CONCURRENT):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self._lock = threading.Lock()
        self._in_flight = 0
        self._waiters: Deque[threading.Event] = deque()

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    @property
    def waiting(self) -> int:
        with self._lock:
            return len(self._waiters)

    def _acquire(self) -> None:
        with self._lock:
            if self._in_flight < self.limit and not self._waiters:
                self._in_flight += 1
                return
            turn = threading.Event()
            self._waiters.append(turn)
            logger.debug(f"Request gate at capacity ({self._in_flight}/{self.limit}), {len(self._waiters)} waiting")
        # The releasing thread transfers its slot to us before setting the event
        turn.wait()

    def _release(self) -> None:
        with self._lock:
            if self._waiters:
                self._waiters.popleft().set()
            else:
                self._in_flight -= 1

    def admit(self, task: Callable[[], T]) -> T:
        """Run ``task`` once a slot is free and return its result (or re-raise its error)."""
        self._acquire()
        try:
            return task()
        finally:
            self._release()
