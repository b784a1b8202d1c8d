"""Custom exceptions for the gimbal serial control library."""


class GimbalError(Exception):
    """Base exception for all gimbal library errors."""

    pass


class GimbalConnectionError(GimbalError, ConnectionError):
    """Raised when the serial port cannot be opened or reopened.

    Covers a cancelled port selection (no port given), an open/reopen
    failure, and opening while a connection is already live.
    """

    pass


class SerialIOError(GimbalError):
    """Raised when a write fails on a port that is still open."""

    pass


class MalformedFrame(GimbalError):
    """Raised when a response fails field-count or numeric validation."""

    pass


class NotReadyError(GimbalError):
    """Raised when a motion command is issued while disconnected or with motors off."""

    pass


class CalibrationError(GimbalError):
    """Raised when zero-angle calibration cannot read valid offsets."""

    pass


class CommutationTimeout(GimbalError):
    """Raised when the drive does not report commutation done in time."""

    pass
