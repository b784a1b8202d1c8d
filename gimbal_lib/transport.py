"""Serial transport session for gimbal drive communication."""

import logging
import threading
import time
from typing import Callable, List, Optional, Protocol

from gimbal_lib import codec
from gimbal_lib.errors import GimbalConnectionError, SerialIOError
from gimbal_lib.models import ConnectionState, GimbalConfig

logger = logging.getLogger(__name__)


class SerialLike(Protocol):
    """Protocol for serial port interface (allows test doubles)."""

    def write(self, data: bytes) -> int:
        """Write bytes to serial port."""
        ...

    def read(self, size: int = 1) -> bytes:
        """Read up to size bytes, blocking at most the port timeout."""
        ...

    def flush(self) -> None:
        """Flush output buffer (force transmission)."""
        ...

    def reset_input_buffer(self) -> None:
        """Discard pending input."""
        ...

    def close(self) -> None:
        """Close serial port."""
        ...

    @property
    def is_open(self) -> bool:
        """Check if port is open."""
        ...


PortFactory = Callable[[str, int, float], SerialLike]
StateListener = Callable[[ConnectionState], None]


def open_serial_port(port: str, baud: int, timeout_s: float) -> SerialLike:
    """Open a real serial port with pyserial (8N1, no flow control).

    Raises:
        GimbalConnectionError: If pyserial is missing or the port cannot be opened
    """
    try:
        import serial  # type: ignore
    except ImportError as e:
        raise GimbalConnectionError("pyserial not installed. Run: pip install pyserial") from e

    try:
        ser = serial.Serial(
            port=port,
            baudrate=baud,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            timeout=timeout_s,
            rtscts=False,
            dsrdtr=False,
            xonxoff=False,
        )
    except (serial.SerialException, OSError, ValueError) as e:
        raise GimbalConnectionError(f"Failed to open {port} at {baud} baud: {e}") from e

    logger.info(f"Opened serial port {port} at {baud} baud, timeout={timeout_s}s")
    return ser


class Transport:
    """Owns the single open serial connection and its read/write primitives.

    State machine: DISCONNECTED -> CONNECTING -> OPEN -> DISCONNECTED, with
    RECONNECTING while the same port is closed and reopened. Only this class
    touches the port handle; handle swaps are guarded by an internal lock
    that is never held across a blocking read.
    """

    def __init__(
        self,
        config: Optional[GimbalConfig] = None,
        port_factory: Optional[PortFactory] = None,
    ) -> None:
        """Initialize an unopened session.

        Args:
            config: Link configuration. Defaults to GimbalConfig().
            port_factory: Callable (port, baud, timeout_s) -> SerialLike.
                          Defaults to pyserial; tests inject fakes here.
        """
        self._config = config or GimbalConfig()
        self._port_factory = port_factory or open_serial_port
        self._port: Optional[SerialLike] = None
        self._port_name: Optional[str] = None
        self._baud: int = self._config.baud
        self._state = ConnectionState.DISCONNECTED
        self._handle_lock = threading.RLock()
        self._state_listeners: List[StateListener] = []

    # ========================================================================
    # State
    # ========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        """True when a port handle is held and reports open."""
        port = self._port
        return port is not None and bool(port.is_open)

    @property
    def port_name(self) -> Optional[str]:
        return self._port_name

    @property
    def config(self) -> GimbalConfig:
        return self._config

    def add_state_listener(self, listener: StateListener) -> None:
        """Register a callback invoked on every state transition."""
        self._state_listeners.append(listener)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug(f"Transport state {self._state.value} -> {state.value}")
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"State listener failed: {e}", exc_info=True)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def open(
        self,
        port: Optional[str],
        baud: Optional[int] = None,
        serial_port: Optional[SerialLike] = None,
    ) -> None:
        """Open the serial port and take the reader/writer handle.

        Args:
            port: Port device name (e.g. "/dev/ttyUSB0"). None or empty means
                  no port was chosen and the connect is cancelled.
            baud: Baud rate; defaults to the configured rate.
            serial_port: Pre-opened port object (for testing). If given, the
                         factory is skipped and ``port`` is only a label.

        Raises:
            GimbalConnectionError: If already open, no port was chosen, or
                                   the port fails to open
        """
        with self._handle_lock:
            if self._state is not ConnectionState.DISCONNECTED:
                raise GimbalConnectionError(f"Already connected (state: {self._state.value})")

            if serial_port is None and not port:
                raise GimbalConnectionError("No serial port selected")

            self._set_state(ConnectionState.CONNECTING)
            baud = baud or self._config.baud

            try:
                if serial_port is None:
                    serial_port = self._port_factory(port, baud, self._config.port_read_timeout_s)
                elif not serial_port.is_open:
                    raise GimbalConnectionError(f"Serial port {port or serial_port!r} is not open")
            except GimbalConnectionError:
                self._set_state(ConnectionState.DISCONNECTED)
                raise
            except Exception as e:
                self._set_state(ConnectionState.DISCONNECTED)
                raise GimbalConnectionError(f"Failed to open {port} at {baud} baud: {e}") from e

            self._port = serial_port
            self._port_name = port
            self._baud = baud
            self._set_state(ConnectionState.OPEN)
            logger.info(f"Serial session open on {port or 'injected port'} at {baud} baud")

    def close(self) -> None:
        """Release the handle and close the port. Safe in any state; never raises."""
        with self._handle_lock:
            self._release()
            self._set_state(ConnectionState.DISCONNECTED)

    def reconnect(self) -> None:
        """Close and reopen the same port at the same settings.

        Raises:
            GimbalConnectionError: If there is no previous port or reopen
                                   fails; the session is then DISCONNECTED
        """
        with self._handle_lock:
            if not self._port_name:
                raise GimbalConnectionError("Cannot reconnect: no previous port")

            logger.info(f"Reconnecting to {self._port_name} at {self._baud} baud...")
            self._set_state(ConnectionState.RECONNECTING)
            self._release()

            try:
                self._port = self._port_factory(
                    self._port_name, self._baud, self._config.port_read_timeout_s
                )
            except Exception as e:
                self._port = None
                self._set_state(ConnectionState.DISCONNECTED)
                if isinstance(e, GimbalConnectionError):
                    raise
                raise GimbalConnectionError(f"Failed to reopen {self._port_name}: {e}") from e

            self._set_state(ConnectionState.OPEN)
            logger.info("Reconnected")

    def _release(self) -> None:
        """Drop and close the current handle, ignoring close errors."""
        port, self._port = self._port, None
        if port is None:
            return
        try:
            if port.is_open:
                port.close()
                logger.info("Closed serial port")
        except Exception as e:
            logger.debug(f"Ignoring error while closing port: {e}")

    # ========================================================================
    # I/O Primitives
    # ========================================================================

    def write(self, data: bytes) -> None:
        """Write raw bytes on the current writer.

        Without an open writer this logs a warning and does nothing.

        Raises:
            SerialIOError: If the write fails while the port is still open
        """
        port = self._port
        if port is None or not port.is_open:
            logger.warning(f"No serial writer open, dropping {data!r}")
            return

        try:
            sent = port.write(data)
            port.flush()
            logger.debug(f"Sent {sent} bytes: {data!r}")
        except Exception as e:
            if self._port is not port:
                logger.debug(f"Write interrupted by close: {e}")
                return
            raise SerialIOError(f"Failed to write to port: {e}") from e

    def send(self, command: str) -> None:
        """Encode a command (CR appended) and write it."""
        self.write(codec.encode(command, self._config.encoding))

    def read_once(self, timeout_s: Optional[float] = None) -> str:
        """Read one response frame.

        Accumulates chunks until the configured end-of-frame condition holds
        or the timeout elapses. A timeout is the normal outcome for commands
        the drive does not answer.

        Args:
            timeout_s: Frame timeout; defaults to config.read_timeout_s

        Returns:
            Trimmed frame text, or "" on timeout, closed port or read error
        """
        if timeout_s is None:
            timeout_s = self._config.read_timeout_s

        port = self._port
        if port is None:
            logger.debug("read_once with no reader open")
            return ""

        decoder = codec.FrameDecoder(self._config.frame_terminator, self._config.encoding)
        deadline = time.monotonic() + timeout_s

        while time.monotonic() < deadline:
            try:
                chunk = port.read(max(1, getattr(port, "in_waiting", 0) or 0))
            except Exception as e:
                logger.debug(f"Read aborted: {e}")
                return ""

            if not chunk:
                continue

            decoder.feed(chunk)
            if decoder.complete:
                frame = decoder.frame()
                logger.debug(f"Received frame: {frame!r}")
                return frame

        if decoder.text:
            logger.debug(f"Read timeout after {timeout_s}s, discarding partial {decoder.text!r}")
        else:
            logger.debug(f"Read timeout after {timeout_s}s")
        return ""

    def flush(
        self,
        timeout_s: Optional[float] = None,
        max_duration_s: Optional[float] = None,
    ) -> None:
        """Drain stale input before a sensitive request/response exchange.

        Reads and discards until a read stalls for ``timeout_s``, the port
        goes away, or ``max_duration_s`` elapses. Never raises.
        """
        if timeout_s is None:
            timeout_s = self._config.flush_timeout_s
        if max_duration_s is None:
            max_duration_s = self._config.flush_max_duration_s

        port = self._port
        if port is None:
            return

        discarded = 0
        try:
            port.reset_input_buffer()
            start = time.monotonic()
            last_data = start
            while True:
                now = time.monotonic()
                if now - start >= max_duration_s:
                    logger.debug("Flush hit max duration")
                    break
                if now - last_data >= timeout_s:
                    break
                if self._port is not port:
                    break

                chunk = port.read(max(1, getattr(port, "in_waiting", 0) or 0))
                if chunk:
                    discarded += len(chunk)
                    last_data = time.monotonic()
        except Exception as e:
            logger.debug(f"Ignoring error while flushing: {e}")

        logger.debug(f"Flushed input ({discarded} bytes discarded)")
