"""Fake serial port that simulates a two-axis gimbal drive.

The simulator keeps a register store and answers the ";"-delimited register
dialect the way the drive does: queries are echoed as ``key;value;`` pairs
closed by an extra ";", assignments are silent.
"""

import logging
import threading
import time
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

# Encoder ticks per degree used by profile moves (pa=, sp=)
TICKS_PER_DEGREE = 2**18 / 360

# Register values the drive reports after power-on
DEFAULT_REGISTERS: Dict[str, str] = {
    "r1[10]": "0",  # system mode
    "r1[31]": "0",  # traverse position
    "r1[41]": "0",  # elevation position
    "r1[33]": "0",  # traverse velocity
    "r1[43]": "0",  # elevation velocity
    "r1[34]": "0",  # traverse current
    "r1[44]": "0",  # elevation current
    "s1[17]": "1000",  # axis 1 encoder offset
    "s2[17]": "2000",  # axis 2 encoder offset
    "ax1.px": "250",  # axis 1 position
    "ax2.px": "-500",  # axis 2 position
    "ax1.so": "0",
    "ax2.so": "0",
}


class FakeGimbalSerial:
    """Deterministic simulator of the gimbal drive's serial behavior.

    Implements the wire protocol including:
    - CR-terminated input, several ";"-separated tokens per line
    - register assignments (no reply) and echoed register queries
    - ";;" end of every non-empty reply
    - commutation status that completes a few polls after ax<n>.mo=1
    - profile moves: ``pa=<ticks>;bg`` sets the traverse position at once

    Test hooks:
    - ``writes``: every command line received, decoded, without CR
    - ``chunk_size``: split replies into reads of at most this many bytes
    - ``inject()``: push raw bytes (garbage, partial frames) to the host
    - ``respond``: when False the drive stays silent
    - ``fail_writes``: when True write() raises OSError
    - ``reply_format``: "echo" (key;value;), "assign" (key=value;) or "bare" (value;)
    """

    def __init__(
        self,
        registers: Optional[Dict[str, object]] = None,
        chunk_size: Optional[int] = None,
        commutation_polls: Optional[int] = 3,
        reply_format: str = "echo",
    ) -> None:
        """Initialize fake drive.

        Args:
            registers: Register values overriding the power-on defaults
                       (keys are case-insensitive)
            chunk_size: Maximum bytes returned per read() call
            commutation_polls: Status polls until commutation reports done;
                               None means it never completes
            reply_format: Reply shape for queries
        """
        self._registers: Dict[str, str] = dict(DEFAULT_REGISTERS)
        if registers:
            for key, value in registers.items():
                self._registers[key.lower()] = str(value)

        self.chunk_size = chunk_size
        self.commutation_polls = commutation_polls
        self.reply_format = reply_format

        self.respond = True
        self.fail_writes = False
        self.writes: List[str] = []
        self.save_count = 0
        self.profile_moves = 0

        self._status_polls: Dict[str, int] = {}
        self._input_buffer = bytearray()
        self._output = bytearray()
        self._cond = threading.Condition()

        # Port state
        self.is_open = True
        self.timeout = 0.01  # Per-read blocking timeout (matches port_read_timeout_s)

    # ========================================================================
    # Serial Interface
    # ========================================================================

    def close(self) -> None:
        """Close the fake serial port, waking any blocked reader."""
        with self._cond:
            self.is_open = False
            self._cond.notify_all()
        logger.debug("FakeGimbalSerial closed")

    def write(self, data: bytes) -> int:
        """Write data to the drive (from host perspective).

        Raises:
            RuntimeError: If the port is closed
            OSError: If fail_writes is set
        """
        if not self.is_open:
            raise RuntimeError("Port is closed")
        if self.fail_writes:
            raise OSError("Simulated write failure")

        self._input_buffer.extend(data)
        logger.debug(f"FakeGimbalSerial received: {data!r}")
        self._process_input()
        return len(data)

    def read(self, size: int = 1) -> bytes:
        """Read up to size bytes, blocking at most ``timeout`` seconds."""
        if not self.is_open:
            raise RuntimeError("Port is closed")

        limit = size if self.chunk_size is None else min(size, self.chunk_size)
        deadline = time.monotonic() + self.timeout
        with self._cond:
            while not self._output and self.is_open:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return b""
                self._cond.wait(remaining)

            data = bytes(self._output[:limit])
            del self._output[:limit]
            return data

    @property
    def in_waiting(self) -> int:
        with self._cond:
            return len(self._output)

    def flush(self) -> None:
        """Flush output buffer (writes are immediate, so nothing to do)."""
        pass

    def reset_input_buffer(self) -> None:
        """Discard replies not yet read by the host."""
        with self._cond:
            self._output.clear()
        logger.debug("FakeGimbalSerial input buffer flushed")

    # ========================================================================
    # Test Hooks
    # ========================================================================

    def inject(self, data: bytes) -> None:
        """Queue raw bytes for the host as if the drive had sent them."""
        with self._cond:
            self._output.extend(data)
            self._cond.notify_all()

    def set_register(self, key: str, value: object) -> None:
        self._registers[key.lower()] = str(value)

    def get_register(self, key: str) -> Optional[str]:
        return self._registers.get(key.lower())

    # ========================================================================
    # Internal: Input Processing
    # ========================================================================

    def _process_input(self) -> None:
        """Handle every complete CR-terminated command line."""
        while b"\r" in self._input_buffer:
            idx = self._input_buffer.index(b"\r")
            line = bytes(self._input_buffer[:idx]).decode("latin-1")
            del self._input_buffer[: idx + 1]

            self.writes.append(line)
            reply = self._handle_line(line)
            if reply and self.respond:
                self.inject(reply.encode("latin-1"))

    def _handle_line(self, line: str) -> str:
        """Apply one command line and build its reply text ("" for none)."""
        reply = ""
        for token in (t.strip() for t in line.split(";")):
            if not token:
                continue

            if "=" in token:
                key, _, value = token.partition("=")
                self._assign(key.strip().lower(), value.strip())
                continue

            if token.lower() == "sv":
                self.save_count += 1
                continue

            if token.lower() == "bg":
                self._begin_profile_move()
                continue

            reply += self._format_reply(token, self._query(token.lower()))

        return reply + ";" if reply else ""

    def _assign(self, key: str, value: str) -> None:
        self._registers[key] = value

        # Enabling an axis in commutation mode starts the commutation run
        if key.endswith(".mo") and value == "1" and self._registers.get("rz[1]") == "167":
            axis = key[: -len(".mo")]
            self._status_polls[axis] = 0
            self._registers[f"{axis}.so"] = "0"

    def _begin_profile_move(self) -> None:
        """Complete the pending profile move on the traverse axis instantly."""
        target = self._registers.get("pa")
        if target is None:
            return
        self.profile_moves += 1
        self._registers["r1[31]"] = str(int(target) / TICKS_PER_DEGREE)

    def _query(self, key: str) -> str:
        if key.endswith(".so"):
            axis = key[: -len(".so")]
            if axis in self._status_polls:
                self._status_polls[axis] += 1
                if (
                    self.commutation_polls is not None
                    and self._status_polls[axis] >= self.commutation_polls
                ):
                    self._registers[key] = "1"
        return self._registers.get(key, "0")

    def _format_reply(self, token: str, value: str) -> str:
        if self.reply_format == "bare":
            return f"{value};"
        if self.reply_format == "assign":
            return f"{token}={value};"
        return f"{token};{value};"
