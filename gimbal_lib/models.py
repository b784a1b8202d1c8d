"""Data models for the gimbal serial control library."""

import codecs
import math
import os
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Dict, Optional, Protocol

from gimbal_lib import protocol


class ConnectionState(Enum):
    """Transport session connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"


class PollerState(Enum):
    """Telemetry poller run states."""

    STOPPED = "stopped"
    RUNNING = "running"


class FrameTerminator(Enum):
    """End-of-frame detection strategy for response reads.

    DOUBLE_SEMICOLON: frame ends once the accumulated text contains ";;".
    ANY_DELIMITER: frame ends on the first chunk containing ";", LF or CR.
    """

    DOUBLE_SEMICOLON = "double_semicolon"
    ANY_DELIMITER = "any_delimiter"


@dataclass(frozen=True)
class TelemetrySample:
    """One parsed snapshot of gimbal motion state.

    Attributes:
        system_mode: Drive system mode (R1[10]).
        pos_tr: Traverse position (R1[31]).
        pos_el: Elevation position (R1[41]).
        vel_tr: Traverse velocity (R1[33]).
        vel_el: Elevation velocity (R1[43]).
        cur_tr: Traverse current (R1[34]).
        cur_el: Elevation current (R1[44]).

    Values are raw drive units; scaling to degrees, deg/s or amps is left
    to the consumer.
    """

    system_mode: Optional[float] = None
    pos_tr: Optional[float] = None
    pos_el: Optional[float] = None
    vel_tr: Optional[float] = None
    vel_el: Optional[float] = None
    cur_tr: Optional[float] = None
    cur_el: Optional[float] = None

    @property
    def is_valid(self) -> bool:
        """True when every field is a finite number."""
        for value in asdict(self).values():
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return False
            if not math.isfinite(value):
                return False
        return True

    def as_dict(self) -> Dict[str, Optional[float]]:
        return asdict(self)


class GimbalListener(Protocol):
    """UI/recording collaborator fed by the transport core."""

    def on_sample(self, sample: TelemetrySample) -> None:
        """Receive a throttled telemetry sample for display."""
        ...

    def on_connection_state_change(self, state: ConnectionState) -> None:
        """Receive every connection state transition."""
        ...

    def is_recording(self) -> bool:
        """Whether accepted samples should be recorded."""
        ...

    def append_record(self, sample: TelemetrySample, elapsed_ms: float) -> None:
        """Record an accepted sample, elapsed_ms after recording began."""
        ...


def _env_ms(name: str, default_s: float) -> float:
    """Read a millisecond env var and return seconds."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default_s
    return float(raw) / 1000.0


@dataclass
class GimbalConfig:
    """Deployment configuration for the serial link.

    Attributes:
        baud: Serial baud rate. One consistent rate per deployment.
        encoding: Single-byte wire charset.
        frame_terminator: End-of-frame detection for response reads.
        poll_period_s: Telemetry tick period.
        ui_update_interval_s: Minimum spacing of samples forwarded to on_sample.
        read_timeout_s: Timeout for manual request/response reads.
        poll_read_timeout_s: Timeout for one telemetry read; the poller
            clamps it to the tick period.
        flush_timeout_s: Stall time that ends a flush.
        flush_max_duration_s: Hard cap on one flush.
        port_read_timeout_s: pyserial blocking read timeout.
    """

    baud: int = protocol.DEFAULT_BAUD
    encoding: str = protocol.WIRE_ENCODING
    frame_terminator: FrameTerminator = FrameTerminator.DOUBLE_SEMICOLON
    poll_period_s: float = protocol.POLL_PERIOD
    ui_update_interval_s: float = protocol.UI_UPDATE_INTERVAL
    read_timeout_s: float = protocol.READ_TIMEOUT
    poll_read_timeout_s: float = protocol.POLL_READ_TIMEOUT
    flush_timeout_s: float = protocol.FLUSH_STALL_TIMEOUT
    flush_max_duration_s: float = protocol.FLUSH_MAX_DURATION
    port_read_timeout_s: float = protocol.PORT_READ_TIMEOUT

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.baud <= 0:
            raise ValueError(f"baud must be positive, got {self.baud}")

        if isinstance(self.frame_terminator, str):
            self.frame_terminator = FrameTerminator(self.frame_terminator)

        for name in (
            "poll_period_s",
            "ui_update_interval_s",
            "read_timeout_s",
            "poll_read_timeout_s",
            "flush_timeout_s",
            "flush_max_duration_s",
            "port_read_timeout_s",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")

        codecs.lookup(self.encoding)  # LookupError on unknown codec

    @classmethod
    def from_env(cls) -> "GimbalConfig":
        """Build a config from GIMBAL_* environment variables.

        Durations are given in milliseconds, matching the device tooling.
        """
        defaults = cls()
        return cls(
            baud=int(os.getenv("GIMBAL_BAUD", str(defaults.baud))),
            frame_terminator=FrameTerminator(
                os.getenv("GIMBAL_FRAME_TERMINATOR", defaults.frame_terminator.value)
            ),
            poll_period_s=_env_ms("GIMBAL_POLL_PERIOD_MS", defaults.poll_period_s),
            ui_update_interval_s=_env_ms("GIMBAL_UI_UPDATE_MS", defaults.ui_update_interval_s),
            read_timeout_s=_env_ms("GIMBAL_READ_TIMEOUT_MS", defaults.read_timeout_s),
            poll_read_timeout_s=_env_ms(
                "GIMBAL_POLL_READ_TIMEOUT_MS", defaults.poll_read_timeout_s
            ),
        )
