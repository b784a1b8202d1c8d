"""Exclusive wire access between the telemetry poll and one-off operations."""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AccessScheduler:
    """Serializes use of the half-duplex serial wire.

    Two kinds of users share the wire:

    - one repeating consumer (the telemetry poller) that enters through
      direct_access() once per tick. It never waits: if a one-off operation
      holds or has requested the wire, the tick is skipped and dropped.
    - any number of one-off operations (commands, calibration reads) that
      enter through exclusive()/run_exclusive(). The first holder raises
      pause_requested and waits only for the poller's in-flight tick, not
      for a free slot. Holding is reentrant per thread, so a procedure may
      call other exclusive helpers; other threads queue behind it.

    The poller path takes the condition lock only to flip its flag, so the
    common case of uncontended polling stays cheap.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._owner: Optional[int] = None
        self._depth = 0
        self._waiters = 0
        self._pause_requested = False
        self._cycle_in_progress = False
        self._cycle_thread: Optional[int] = None

    @property
    def depth(self) -> int:
        """Current exclusive nesting depth (0 = free)."""
        return self._depth

    @property
    def pause_requested(self) -> bool:
        return self._pause_requested

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_in_progress

    # ========================================================================
    # One-off operations
    # ========================================================================

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold the wire for the duration of the block."""
        self._acquire()
        try:
            yield
        finally:
            self._release()

    def run_exclusive(self, op: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``op`` while holding the wire; exceptions propagate after release."""
        with self.exclusive():
            return op(*args, **kwargs)

    def _acquire(self) -> None:
        me = threading.get_ident()
        with self._cond:
            if self._owner == me:
                self._depth += 1
                return

            self._waiters += 1
            self._pause_requested = True
            try:
                while self._owner is not None:
                    self._cond.wait()
            finally:
                self._waiters -= 1

            self._owner = me
            self._depth = 1
            self._pause_requested = True

            # Wait out the poller's in-flight tick, unless we are that tick
            while self._cycle_in_progress and self._cycle_thread != me:
                self._cond.wait()

    def _release(self) -> None:
        with self._cond:
            if self._owner != threading.get_ident():
                raise RuntimeError("Exclusive access released by a thread that does not hold it")

            self._depth -= 1
            if self._depth > 0:
                return

            self._owner = None
            self._pause_requested = self._waiters > 0
            self._cond.notify_all()

    # ========================================================================
    # Repeating consumer
    # ========================================================================

    def direct_access(self, op: Callable[[], Any]) -> bool:
        """Run one poller tick unless the wire is claimed.

        Returns:
            True if ``op`` ran, False if the tick was skipped
        """
        with self._cond:
            if self._pause_requested or self._cycle_in_progress:
                return False
            self._cycle_in_progress = True
            self._cycle_thread = threading.get_ident()

        try:
            op()
        finally:
            with self._cond:
                self._cycle_in_progress = False
                self._cycle_thread = None
                self._cond.notify_all()

        return True
