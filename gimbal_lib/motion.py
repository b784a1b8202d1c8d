"""Cancellable host-driven motion programs."""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# Called once per interval; returning False ends the program
MotionStep = Callable[[], bool]


class MotionTask:
    """Runs a motion step on a background thread at a fixed interval.

    The first step runs one interval after start(). The task ends when the
    step returns False, raises, or stop() is called. Steps write through the
    controller's exclusive-access path, so they never interleave with other
    wire traffic.
    """

    def __init__(self, name: str, step: MotionStep, interval_s: float) -> None:
        if interval_s <= 0:
            raise ValueError(f"interval_s must be positive, got {interval_s}")

        self.name = name
        self._step = step
        self._interval_s = interval_s
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.steps_run = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start stepping.

        Raises:
            RuntimeError: If already running
        """
        if self.is_running:
            raise RuntimeError(f"Motion program '{self.name}' already running")

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name=f"MotionTask-{self.name}",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Motion program '{self.name}' started")

    def stop(self) -> None:
        """Cancel further steps. Safe to call from inside a step."""
        thread = self._thread
        if thread is None:
            return

        self._stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout=5.0)
            if thread.is_alive():
                logger.warning(f"Motion program '{self.name}' did not stop cleanly")
        logger.info(f"Motion program '{self.name}' stopped")

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self._interval_s):
            try:
                keep_going = self._step()
            except Exception as e:
                logger.error(f"Motion program '{self.name}' failed: {e}", exc_info=True)
                break

            self.steps_run += 1
            if keep_going is False:
                logger.info(f"Motion program '{self.name}' finished")
                break
