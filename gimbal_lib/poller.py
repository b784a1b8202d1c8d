"""Repeating telemetry poll with UI throttling and recording hand-off."""

import logging
import threading
import time
from typing import Optional

from gimbal_lib import parsing, protocol
from gimbal_lib.errors import MalformedFrame
from gimbal_lib.models import GimbalConfig, GimbalListener, PollerState, TelemetrySample
from gimbal_lib.scheduler import AccessScheduler
from gimbal_lib.transport import Transport

logger = logging.getLogger(__name__)


class TelemetryPoller:
    """Polls the telemetry registers on a background thread.

    Each tick enters the wire through AccessScheduler.direct_access(), so a
    tick that coincides with a one-off operation is skipped rather than
    queued. Accepted samples go to the listener's recording sink every time
    and to on_sample() at most once per ui_update_interval_s.
    """

    def __init__(
        self,
        transport: Transport,
        scheduler: AccessScheduler,
        listener: Optional[GimbalListener] = None,
        config: Optional[GimbalConfig] = None,
    ) -> None:
        self._transport = transport
        self._scheduler = scheduler
        self._listener = listener
        self._config = config or transport.config

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._period_s = self._config.poll_period_s

        # Transient state, cleared on stop()
        self._latest: Optional[TelemetrySample] = None
        self._last_forward: Optional[float] = None
        self._record_start: Optional[float] = None

        self.ticks_run = 0
        self.ticks_skipped = 0
        self.frames_dropped = 0

    @property
    def state(self) -> PollerState:
        if self._thread is not None and self._thread.is_alive():
            return PollerState.RUNNING
        return PollerState.STOPPED

    @property
    def is_running(self) -> bool:
        return self.state is PollerState.RUNNING

    @property
    def latest_sample(self) -> Optional[TelemetrySample]:
        """Most recent accepted sample (not necessarily forwarded)."""
        return self._latest

    @property
    def period_s(self) -> float:
        return self._period_s

    def set_listener(self, listener: Optional[GimbalListener]) -> None:
        self._listener = listener

    # ========================================================================
    # Start / Stop
    # ========================================================================

    def start(self, period_s: Optional[float] = None) -> None:
        """Enable drive streaming and start ticking every ``period_s``.

        Raises:
            RuntimeError: If already running
            ValueError: If period_s is not positive
        """
        if self.is_running:
            raise RuntimeError("Telemetry poller already running")

        period_s = period_s or self._config.poll_period_s
        if period_s <= 0:
            raise ValueError(f"period_s must be positive, got {period_s}")
        self._period_s = period_s

        self._scheduler.run_exclusive(self._transport.send, protocol.STREAM_ENABLE_CMD)

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            name="TelemetryPoller",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Telemetry poller started at {1.0 / period_s:.1f} Hz")

    def stop(self) -> None:
        """Cancel the repeating tick, disable streaming, and clear transient state."""
        thread = self._thread
        if thread is not None:
            logger.debug("Stopping telemetry poller...")
            self._stop_event.set()
            if thread is not threading.current_thread():
                thread.join(timeout=5.0)
                if thread.is_alive():
                    logger.warning("Telemetry poller thread did not stop cleanly")
            self._thread = None

        if self._transport.is_open:
            self._scheduler.run_exclusive(self._transport.send, protocol.STREAM_DISABLE_CMD)

        self._latest = None
        self._last_forward = None
        self._record_start = None
        logger.info("Telemetry poller stopped")

    # ========================================================================
    # Tick
    # ========================================================================

    def _poll_loop(self) -> None:
        """Background thread loop: one tick per period, skipping when excluded."""
        logger.info(f"Telemetry poll loop started (thread {threading.get_ident()})")

        while not self._stop_event.is_set():
            cycle_start = time.monotonic()

            try:
                if self._scheduler.direct_access(self._tick):
                    self.ticks_run += 1
                else:
                    self.ticks_skipped += 1
            except Exception as e:
                logger.error(f"Error in telemetry poll loop: {e}", exc_info=True)

            elapsed = time.monotonic() - cycle_start
            sleep_time = max(0.0, self._period_s - elapsed)
            if self._stop_event.wait(timeout=sleep_time):
                break

        logger.info("Telemetry poll loop stopped")

    def _tick(self) -> None:
        """Send the telemetry read and handle one response frame."""
        self._transport.send(protocol.TELEMETRY_READ_CMD)

        timeout = min(self._config.poll_read_timeout_s, self._period_s)
        text = self._transport.read_once(timeout)
        if not text:
            return

        try:
            sample = parsing.parse_telemetry(text)
        except MalformedFrame as e:
            self.frames_dropped += 1
            logger.debug(f"Dropping telemetry frame: {e}")
            return

        self.handle_sample(sample)

    def handle_sample(self, sample: TelemetrySample, now: Optional[float] = None) -> None:
        """Record an accepted sample and forward it if the UI is due an update.

        Args:
            sample: Validated sample
            now: Monotonic timestamp (seconds); defaults to time.monotonic()
        """
        if now is None:
            now = time.monotonic()

        self._latest = sample
        listener = self._listener
        if listener is None:
            return

        if listener.is_recording():
            if self._record_start is None:
                self._record_start = now
            listener.append_record(sample, (now - self._record_start) * 1000.0)
        else:
            self._record_start = None

        if (
            self._last_forward is None
            or now - self._last_forward >= self._config.ui_update_interval_s
        ):
            self._last_forward = now
            listener.on_sample(sample)
