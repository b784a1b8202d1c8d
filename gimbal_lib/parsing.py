"""Pure functions for parsing register responses and telemetry frames."""

import logging
import math
from typing import List, Optional, Sequence, Tuple, Union

from gimbal_lib import protocol
from gimbal_lib.errors import MalformedFrame
from gimbal_lib.models import TelemetrySample

logger = logging.getLogger(__name__)

Key = Union[int, str]
Value = Union[int, float, str]
Pair = Tuple[Key, Value]


def parse_number(token: str) -> Value:
    """Convert a token to int or float when it is numeric.

    Non-numeric tokens, NaN and the empty string are returned unchanged,
    so an empty value stays "" instead of becoming 0. Only plain ASCII
    notation counts as numeric: digit-group underscores and non-ASCII
    digits are left as text.
    """
    text = token.strip()
    if not text or not text.isascii() or "_" in text:
        return token

    try:
        return int(text)
    except ValueError:
        pass

    try:
        value = float(text)
    except ValueError:
        return token

    if math.isnan(value):
        return token
    return value


def _parse_key(token: str) -> Key:
    """Canonical R1[n] keys become n; any other key is kept verbatim."""
    match = protocol.RE_REGISTER_KEY.match(token)
    if match:
        return int(match.group(1))
    return token


def _tokens(text: str) -> List[str]:
    return [t.strip() for t in text.split(protocol.TOKEN_SEPARATOR) if t.strip()]


def parse_pairs(text: str) -> List[Pair]:
    """Split a response into ordered (key, value) pairs.

    Tokens are separated by ";". A token of the form ``key=value`` is a pair
    on its own; otherwise consecutive tokens alternate key, value. A trailing
    key with no value is dropped.

    Examples:
        "R1[10]=0;R1[31]=-1226;"    -> [(10, 0), (31, -1226)]
        "R1[10];0;AX1.px;15.5;;"    -> [(10, 0), ("AX1.px", 15.5)]
        "foo=bar;"                  -> [("foo", "bar")]

    Args:
        text: Raw response text (terminators may be left in)

    Returns:
        List of pairs in wire order; keys may repeat
    """
    tokens = _tokens(text)
    pairs: List[Pair] = []

    i = 0
    while i < len(tokens):
        token = tokens[i]

        if "=" in token:
            raw_key, _, raw_value = token.partition("=")
            pairs.append((_parse_key(raw_key.strip()), parse_number(raw_value.strip())))
            i += 1
            continue

        if i + 1 >= len(tokens):
            logger.debug(f"Dropping unpaired trailing key {token!r}")
            break

        pairs.append((_parse_key(token), parse_number(tokens[i + 1])))
        i += 2

    return pairs


def extract_keys(command: str) -> List[str]:
    """Return every bracketed register index in a command, in order.

    Example: "R1[10];S1[17];" -> ["10", "17"]
    """
    return protocol.RE_BRACKET_INDEX.findall(command)


def get_value(pairs: Sequence[Pair], key: Key) -> Optional[Value]:
    """Value of the first pair whose key equals ``key`` as a string, or None."""
    wanted = str(key)
    for k, v in pairs:
        if str(k) == wanted:
            return v
    return None


def matches_request(command: str, pairs: Sequence[Pair]) -> bool:
    """Check that a response carries exactly the registers the command asked for.

    Compares bracketed indices of the command with those of the response
    keys, in order.
    """
    seen: List[str] = []
    for key, _ in pairs:
        if isinstance(key, int):
            seen.append(str(key))
        else:
            seen.extend(extract_keys(key))
    return seen == extract_keys(command)


def _is_finite_number(value: object) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def parse_telemetry(text: str) -> TelemetrySample:
    """Parse a telemetry response into a TelemetrySample.

    Two frame shapes are accepted:
    - keyed: exactly the seven telemetry registers, in request order
      ("R1[10];1;R1[31];-1226;...;;" or "R1[10]=1;R1[31]=-1226;...")
    - bare: exactly seven ";"-delimited values ("1;-1226;...;;")

    Every field must be a finite number. No partial sample is ever returned.

    Raises:
        MalformedFrame: If the shape or any value is invalid
    """
    if not text.strip():
        raise MalformedFrame("Empty telemetry frame")

    pairs = parse_pairs(text)
    if matches_request(protocol.TELEMETRY_READ_CMD, pairs):
        values = [v for _, v in pairs]
    else:
        fields = _tokens(text)
        if len(fields) != protocol.TELEMETRY_FIELD_COUNT:
            raise MalformedFrame(
                f"Expected {protocol.TELEMETRY_FIELD_COUNT} telemetry fields, "
                f"got {len(fields)}: {text!r}"
            )
        values = [parse_number(f) for f in fields]

    for (name, _), value in zip(protocol.TELEMETRY_FIELDS, values):
        if not _is_finite_number(value):
            raise MalformedFrame(f"Field {name} is not a finite number: {value!r}")

    return TelemetrySample(
        **{name: float(value) for (name, _), value in zip(protocol.TELEMETRY_FIELDS, values)}
    )


def parse_status_flag(text: str) -> Optional[int]:
    """Extract the last integer of a status reply such as "ax2.SO;1;;".

    The drive may echo the query, so the value is the final number rather
    than the first. Returns None when the reply holds no integer.
    """
    pairs = parse_pairs(text)
    if pairs:
        value = pairs[-1][1]
        if isinstance(value, int):
            return value
    for token in reversed(_tokens(text)):
        value = parse_number(token)
        if isinstance(value, int):
            return value
    return None
