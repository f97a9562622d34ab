"""
Bounded Concurrency Module

This module provides the worker pool the scanner dispatches per-index units
to. The pool bounds how many units run at once; results are handed back to
the single coordinating loop strictly in submission order, so all counters
are folded serially by one thread.
"""

from concurrent.futures import ThreadPoolExecutor, Future
from collections import deque
import logging
from typing import Any, Callable, Deque, Optional, Tuple


class BoundedDispatcher:
    """Thread pool with an ordered in-flight window"""

    def __init__(self, max_workers: int = 5, thread_name_prefix: str = "decree-unit"):
        """
        Initialize the dispatcher.

        Args:
            max_workers: Maximum number of units running simultaneously
            thread_name_prefix: Name prefix of the worker threads
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=thread_name_prefix)
        self._in_flight: Deque[Tuple[Any, Future]] = deque()
        self.submitted = 0
        self.completed = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def full(self) -> bool:
        return len(self._in_flight) >= self.max_workers

    def submit(self, key: Any, fn: Callable, *args, **kwargs) -> None:
        """Start one unit; key identifies it when its result is collected."""
        self._in_flight.append((key, self._executor.submit(fn, *args, **kwargs)))
        self.submitted += 1

    def wait_oldest(self, on_error: Optional[Callable[[Any, BaseException], Any]] = None) -> Tuple[Any, Any]:
        """
        Block until the oldest in-flight unit finishes and return (key, result).

        If the unit raised, on_error(key, exc) supplies the result instead;
        without on_error the exception propagates.
        """
        key, future = self._in_flight.popleft()
        try:
            result = future.result()
        except Exception as e:
            if on_error is None:
                raise
            logging.error(f"Unit {key} failed unexpectedly: {e}")
            result = on_error(key, e)
        self.completed += 1
        return key, result

    def drain(self, on_error: Optional[Callable[[Any, BaseException], Any]] = None):
        """Yield (key, result) for every in-flight unit, oldest first."""
        while self._in_flight:
            yield self.wait_oldest(on_error)

    def get_stats(self) -> dict:
        return {
            'max_workers': self.max_workers,
            'submitted': self.submitted,
            'completed': self.completed,
            'in_flight': self.in_flight,
        }

    def shutdown(self):
        self._executor.shutdown(wait=True)
