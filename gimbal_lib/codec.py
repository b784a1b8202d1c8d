"""Wire codec: command encoding and incremental response framing."""

import codecs
import logging

from gimbal_lib import protocol
from gimbal_lib.models import FrameTerminator

logger = logging.getLogger(__name__)


def encode(command: str, encoding: str = protocol.WIRE_ENCODING) -> bytes:
    """Encode a command for transmission, appending a single CR.

    Line feeds are ordinary text; only the CR terminator is reserved.

    Args:
        command: Command text, e.g. "R1[1]=1" or "R1[10];R1[31];"
        encoding: Single-byte wire charset

    Returns:
        Bytes ready for the writer

    Raises:
        ValueError: If the command embeds CR or NUL, or has characters
                    outside the wire charset
    """
    for char in protocol.FORBIDDEN_COMMAND_CHARS:
        if char in command:
            raise ValueError(f"Command contains forbidden character {char!r}: {command!r}")

    return (command + protocol.INPUT_TERMINATOR).encode(encoding)


def decode(data: bytes, encoding: str = protocol.WIRE_ENCODING) -> str:
    """Decode received bytes, replacing anything undecodable instead of raising."""
    return data.decode(encoding, errors="replace")


class FrameDecoder:
    """Accumulates read chunks into one response frame.

    Decoding is incremental: a multi-byte sequence split across two chunks
    is held back and completed by the next chunk rather than replaced.
    """

    def __init__(
        self,
        terminator: FrameTerminator = FrameTerminator.DOUBLE_SEMICOLON,
        encoding: str = protocol.WIRE_ENCODING,
    ) -> None:
        self._terminator = terminator
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._text = ""
        self._complete = False

    def feed(self, chunk: bytes) -> None:
        """Add one read chunk and update frame completion."""
        piece = self._decoder.decode(chunk)
        self._text += piece

        if self._terminator is FrameTerminator.DOUBLE_SEMICOLON:
            if protocol.FRAME_END_MARKER in self._text:
                self._complete = True
        elif any(delim in piece for delim in protocol.FRAME_DELIMITERS):
            self._complete = True

    @property
    def complete(self) -> bool:
        return self._complete

    @property
    def text(self) -> str:
        """Everything decoded so far."""
        return self._text

    def frame(self) -> str:
        """Frame text, trimmed.

        In DOUBLE_SEMICOLON mode anything after the first end marker belongs
        to no request on a half-duplex wire and is dropped.
        """
        text = self._text
        if self._terminator is FrameTerminator.DOUBLE_SEMICOLON:
            end = text.find(protocol.FRAME_END_MARKER)
            if end >= 0:
                tail = text[end + len(protocol.FRAME_END_MARKER):]
                if tail.strip():
                    logger.debug(f"Dropping {len(tail)} chars after end of frame: {tail!r}")
                text = text[: end + len(protocol.FRAME_END_MARKER)]
        return text.strip()

    def reset(self) -> None:
        self._decoder.reset()
        self._text = ""
        self._complete = False
