"""Thread-safe telemetry store acting as the UI/recording collaborator.

TelemetryStore implements the GimbalListener protocol consumed by the
telemetry poller:
- on_sample(): latest UI-rate sample (throttled by the poller)
- append_record(): every accepted sample while recording is on
- on_connection_state_change(): last known connection state

Recorded rows are buffered and folded into the pandas DataFrame on read, so
the poller thread never pays for a DataFrame concat.
"""

import logging
from threading import RLock
from typing import Any, Dict, List, Optional

import pandas as pd

from data_store.schemas import SCHEMA, sample_to_row
from gimbal_lib.models import ConnectionState, TelemetrySample

logger = logging.getLogger(__name__)


class TelemetryStore:
    """Thread-safe in-memory DataFrame store for recorded telemetry.

    Maintains a pandas DataFrame with normalized schema (time_ms, system_mode,
    Tr_angle, Tr_velocity, Tr_current, El_angle, El_velocity, El_current).
    """

    def __init__(self, max_rows: int = 100000) -> None:
        """Initialize empty store.

        Args:
            max_rows: Maximum rows to keep in memory. Older rows are trimmed.
        """
        if max_rows <= 0:
            raise ValueError(f"max_rows must be positive, got {max_rows}")

        self._lock = RLock()
        self._df = pd.DataFrame(columns=list(SCHEMA.keys()))
        self._pending: List[Dict[str, Any]] = []
        self._max_rows = max_rows

        self._recording = False
        self._latest: Optional[TelemetrySample] = None
        self._connection_state = ConnectionState.DISCONNECTED

    # ========================================================================
    # GimbalListener
    # ========================================================================

    def on_sample(self, sample: TelemetrySample) -> None:
        with self._lock:
            self._latest = sample

    def on_connection_state_change(self, state: ConnectionState) -> None:
        logger.info(f"Connection state: {state.value}")
        with self._lock:
            self._connection_state = state
            if state is ConnectionState.DISCONNECTED:
                self._latest = None

    def is_recording(self) -> bool:
        return self._recording

    def append_record(self, sample: TelemetrySample, elapsed_ms: float) -> None:
        """Buffer one recorded sample. Ignored when recording is off."""
        row = sample_to_row(sample, elapsed_ms)
        with self._lock:
            if not self._recording:
                return
            self._pending.append(row)
            if len(self._pending) >= self._max_rows:
                self._merge_pending()

    # ========================================================================
    # Recording Control
    # ========================================================================

    def start_recording(self) -> None:
        """Clear previously recorded rows and start recording."""
        with self._lock:
            self._df = pd.DataFrame(columns=list(SCHEMA.keys()))
            self._pending = []
            self._recording = True
        logger.info("Recording started")

    def stop_recording(self) -> int:
        """Stop recording.

        Returns:
            Number of rows recorded
        """
        with self._lock:
            self._recording = False
            self._merge_pending()
            count = len(self._df)
        logger.info(f"Recording stopped ({count} rows)")
        return count

    # ========================================================================
    # Queries
    # ========================================================================

    @property
    def latest(self) -> Optional[TelemetrySample]:
        """Most recent sample forwarded for display."""
        with self._lock:
            return self._latest

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection_state

    def get_dataframe(self) -> pd.DataFrame:
        """Get copy of the recorded DataFrame.

        Thread-safe. Returns a copy to prevent external modification.
        """
        with self._lock:
            self._merge_pending()
            return self._df.copy()

    def get_latest_row(self) -> Optional[dict]:
        """Most recent recorded row as a dictionary, or None if empty."""
        with self._lock:
            self._merge_pending()
            if self._df.empty:
                return None
            return self._df.iloc[-1].to_dict()

    def get_stats(self) -> dict:
        """Get summary statistics about recorded data.

        Returns:
            Dictionary with keys:
                - row_count: Total number of recorded samples
                - recording: Whether recording is on
                - duration_s: Time span of data in seconds (or 0)
                - est_sample_rate_hz: Estimated sample rate (or 0)
        """
        with self._lock:
            self._merge_pending()
            if self._df.empty:
                return {
                    "row_count": 0,
                    "recording": self._recording,
                    "duration_s": 0.0,
                    "est_sample_rate_hz": 0.0,
                }

            times = self._df["time_ms"].astype(float)
            duration_s = (times.iloc[-1] - times.iloc[0]) / 1000.0

            rate_hz = 0.0
            if duration_s > 0 and len(self._df) > 1:
                rate_hz = (len(self._df) - 1) / duration_s

            return {
                "row_count": len(self._df),
                "recording": self._recording,
                "duration_s": duration_s,
                "est_sample_rate_hz": rate_hz,
            }

    def clear(self) -> None:
        """Remove all recorded rows."""
        with self._lock:
            self._df = pd.DataFrame(columns=list(SCHEMA.keys()))
            self._pending = []
        logger.info("Cleared all recorded data")

    # ========================================================================
    # Internal
    # ========================================================================

    def _merge_pending(self) -> None:
        """Fold buffered rows into the DataFrame and trim to max_rows. Caller holds lock."""
        if not self._pending:
            return

        new_df = pd.DataFrame(self._pending, columns=list(SCHEMA.keys())).astype(SCHEMA)
        self._pending = []
        if self._df.empty:
            self._df = new_df
        else:
            self._df = pd.concat([self._df, new_df], ignore_index=True)

        # Keep most recent
        if len(self._df) > self._max_rows:
            excess = len(self._df) - self._max_rows
            self._df = self._df.iloc[excess:].reset_index(drop=True)
            logger.debug(f"Trimmed {excess} oldest rows, now {len(self._df)} rows")
