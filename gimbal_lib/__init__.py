"""
gimbal_lib - Python library for two-axis gimbal drives over a serial register protocol.

Supports the ";"-delimited R1[n] register dialect with ";;"-terminated responses.
"""

from gimbal_lib.controller import GimbalController
from gimbal_lib.errors import (
    CalibrationError,
    CommutationTimeout,
    GimbalConnectionError,
    GimbalError,
    MalformedFrame,
    NotReadyError,
    SerialIOError,
)
from gimbal_lib.models import (
    ConnectionState,
    FrameTerminator,
    GimbalConfig,
    GimbalListener,
    PollerState,
    TelemetrySample,
)
from gimbal_lib.scheduler import AccessScheduler
from gimbal_lib.transport import Transport

__version__ = "0.1.0"

__all__ = [
    "GimbalController",
    "Transport",
    "AccessScheduler",
    "GimbalConfig",
    "TelemetrySample",
    "GimbalListener",
    "ConnectionState",
    "PollerState",
    "FrameTerminator",
    "GimbalError",
    "GimbalConnectionError",
    "SerialIOError",
    "MalformedFrame",
    "NotReadyError",
    "CalibrationError",
    "CommutationTimeout",
]
