"""Wire protocol constants and command builders for the gimbal drive.

The drive speaks a line-oriented ASCII register language: assignments such
as ``R1[11]=30`` or ``SP=5000``, several joined with ``;`` on one line, each
line terminated by CR. Reads are bare register names; the drive answers with
``;``-delimited key/value tokens.
"""

import math
import re
from typing import Dict, Final, Optional, Tuple

# ============================================================================
# Line Termination / Framing
# ============================================================================

# Drive expects CR (0x0D) after every command line
INPUT_TERMINATOR: Final[str] = "\r"

# Separator between assignments on one line and between response tokens
TOKEN_SEPARATOR: Final[str] = ";"

# End-of-frame marker appended by the drive after a complete reply
FRAME_END_MARKER: Final[str] = ";;"

# Any of these in a chunk ends a frame in ANY_DELIMITER mode
FRAME_DELIMITERS: Final[Tuple[str, ...]] = (";", "\n", "\r")

# Single-byte charset; every byte maps to one character
WIRE_ENCODING: Final[str] = "latin-1"

# Characters never allowed inside a command body
FORBIDDEN_COMMAND_CHARS: Final[Tuple[str, ...]] = ("\r", "\x00")

# ============================================================================
# Serial Settings
# ============================================================================

DEFAULT_BAUD: Final[int] = 115200

# Rates seen on deployed drive firmware
SUPPORTED_BAUD_RATES: Final[frozenset[int]] = frozenset({9600, 115200, 230400})

# ============================================================================
# Register Map (user array R1)
# ============================================================================

REG_MOTION_MODE: Final[int] = 1  # 0=off, 1=on/position, 8=tune, 12=scan, 13=demo
REG_REMOTE_STREAM: Final[int] = 3  # 1 enables host streaming/remote control
REG_SYSTEM_MODE: Final[int] = 10

REG_TR_TARGET: Final[int] = 11
REG_TR_JOG: Final[int] = 12
REG_TR_POSITION: Final[int] = 31
REG_TR_VELOCITY: Final[int] = 33
REG_TR_CURRENT: Final[int] = 34

REG_EL_TARGET: Final[int] = 21
REG_EL_JOG: Final[int] = 22
REG_EL_POSITION: Final[int] = 41
REG_EL_VELOCITY: Final[int] = 43
REG_EL_CURRENT: Final[int] = 44

# Canonical register-array key: R1[<index>]
RE_REGISTER_KEY: Final[re.Pattern[str]] = re.compile(r"^R1\[([0-9]+)\]$", re.IGNORECASE)

# Any bracketed index inside a command
RE_BRACKET_INDEX: Final[re.Pattern[str]] = re.compile(r"\[([0-9]+)\]")

# ============================================================================
# Telemetry Frame
# ============================================================================

# Field order of a Telemetry Sample, paired with its source register
TELEMETRY_FIELDS: Final[Tuple[Tuple[str, int], ...]] = (
    ("system_mode", REG_SYSTEM_MODE),
    ("pos_tr", REG_TR_POSITION),
    ("pos_el", REG_EL_POSITION),
    ("vel_tr", REG_TR_VELOCITY),
    ("vel_el", REG_EL_VELOCITY),
    ("cur_tr", REG_TR_CURRENT),
    ("cur_el", REG_EL_CURRENT),
)

TELEMETRY_FIELD_COUNT: Final[int] = len(TELEMETRY_FIELDS)


def register(index: int) -> str:
    """Build a canonical register name: R1[<index>]."""
    return f"R1[{index}]"


def make_read_command(*indices: int) -> str:
    """Build a multi-register read command, e.g. ``R1[10];R1[31];``.

    Args:
        indices: Register indices to read, in order

    Returns:
        Command string (no CR appended - codec handles)
    """
    return "".join(f"{register(i)}{TOKEN_SEPARATOR}" for i in indices)


def format_value(value: object) -> str:
    """Render a number the way the drive expects: integral floats without a fraction."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def make_assignment(name: str, value: object) -> str:
    """Build a single assignment, e.g. ``R1[1]=1``."""
    return f"{name}={format_value(value)}"


# Fixed telemetry read: R1[10];R1[31];R1[41];R1[33];R1[43];R1[34];R1[44];
TELEMETRY_READ_CMD: Final[str] = make_read_command(*(reg for _, reg in TELEMETRY_FIELDS))

# ============================================================================
# Fixed Commands
# ============================================================================

STREAM_ENABLE_CMD: Final[str] = make_assignment(register(REG_REMOTE_STREAM), 1)
STREAM_DISABLE_CMD: Final[str] = make_assignment(register(REG_REMOTE_STREAM), 0)

MOTOR_ON_CMD: Final[str] = make_assignment(register(REG_MOTION_MODE), 1)
MOTOR_OFF_CMD: Final[str] = make_assignment(register(REG_MOTION_MODE), 0)

PLAY_TUNE_CMD: Final[str] = make_assignment(register(REG_MOTION_MODE), 8)

# Persist drive parameters to flash
SAVE_SETTINGS_CMD: Final[str] = "sv;"

SCENARIO_COMMANDS: Final[Dict[str, str]] = {
    "scan": "R1[12]=0; R1[22]=0; R1[11]=0; R1[21]=0; R1[1]=12;",
    "demo1": "R1[13]=1; R1[14]=100; R1[15]=90; R1[23]=5; R1[24]=30; R1[25]=10; R1[1]=13;",
}

# Host-driven programs: command lines sent in turn, one per interval
REPEATING_SCENARIOS: Final[Dict[str, Tuple[str, ...]]] = {
    "demo2": ("R1[11]=200; R1[21]=60;", "R1[11]=195; R1[21]=55;"),
}
REPEATING_SCENARIO_INTERVAL: Final[float] = 1.0

# ============================================================================
# Motion
# ============================================================================

# Encoder ticks per degree (18-bit absolute encoder)
DEG_TO_TICKS: Final[float] = 2**18 / 360

VELOCITY_MIN_DEG_S: Final[float] = 1.0
VELOCITY_MAX_DEG_S: Final[float] = 100.0
DEFAULT_VELOCITY_DEG_S: Final[float] = 80.0

# Named positions (traverse, elevation) in degrees
PRESET_POSITIONS: Final[Dict[str, Tuple[float, float]]] = {
    "home": (0.0, 0.0),
    "top_right": (200.0, 65.0),
    "top_left": (-200.0, 65.0),
    "bottom_right": (200.0, -15.0),
    "bottom_left": (-200.0, -15.0),
}

JOYSTICK_DIRECTIONS: Final[frozenset[str]] = frozenset({"UP", "DOWN", "LEFT", "RIGHT", "CENTER"})


def make_move_command(tr_deg: float, el_deg: float, velocity_deg_s: float) -> str:
    """Build the absolute move command for both axes.

    Speed is sent in encoder ticks per second, truncated toward -inf.
    """
    speed = math.floor(velocity_deg_s * DEG_TO_TICKS)
    return f"R1[1]=1; SP={speed}; R1[11]={format_value(tr_deg)}; R1[21]={format_value(el_deg)};"


def make_jog_command(tr_steps: int, el_steps: int) -> str:
    """Build the joystick jog command: R1[12]=<tr>; R1[22]=<el>"""
    return f"R1[12]={tr_steps}; R1[22]={el_steps}"


# ============================================================================
# Torque Test (traverse axis, native profile moves)
# ============================================================================

TORQUE_TEST_CHECK_INTERVAL: Final[float] = 0.2

# Arrival window around a target angle, degrees
TORQUE_TEST_TOLERANCE_DEG: Final[float] = 0.5


def make_profile_move_cmd(angle_deg: float, velocity_deg_s: Optional[float] = None) -> str:
    """Absolute profile move in encoder ticks, optionally setting speed first.

    Example: "sp=29127;pa=7281;bg"
    """
    target = f"pa={math.floor(angle_deg * DEG_TO_TICKS)};bg"
    if velocity_deg_s is None:
        return target
    return f"sp={math.floor(velocity_deg_s * DEG_TO_TICKS)};{target}"


# ============================================================================
# Zero-Angle Calibration
# ============================================================================

CALIBRATION_READ_CMD: Final[str] = "S1[17];AX1.px;S2[17];AX2.px;"

# (offset key, angle key) per axis number, as echoed by the drive
CALIBRATION_KEYS: Final[Dict[int, Tuple[str, str]]] = {
    1: ("S1[17]", "AX1.px"),
    2: ("S2[17]", "AX2.px"),
}

CALIBRATION_MAX_ATTEMPTS: Final[int] = 5
CALIBRATION_RETRY_DELAY: Final[float] = 0.1
CALIBRATION_SETTLE_TIME: Final[float] = 0.2


def make_offset_commands(axis: int, offset: float) -> Tuple[str, ...]:
    """Commands that store a new encoder offset and restart the encoder.

    Register S<n>[18] selects the offset sign convention: 0 for a positive
    offset, -1 otherwise.
    """
    sign_flag = 0 if offset > 0.0 else -1
    return (
        f"S{axis}[17]={format_value(offset)}",
        f"S{axis}[18]={sign_flag};",
        f"s{axis}[1]=0",  # restart encoder
        f"s{axis}[1]=5;",  # restore encoder type
    )


# ============================================================================
# Commutation
# ============================================================================

COMMUTATION_ENTER_CMD: Final[str] = "rz[1]=167"
COMMUTATION_EXIT_CMD: Final[str] = "rz[1]=165"
COMMUTATION_TIMEOUT: Final[float] = 20.0
COMMUTATION_POLL_INTERVAL: Final[float] = 0.1
COMMUTATION_STEP_DELAY: Final[float] = 0.05
COMMUTATION_SETTLE_TIME: Final[float] = 0.2


def make_commutation_setup_cmd(axis: int) -> str:
    return f"ax{axis}.ca[15]=5;ax{axis}.ca[10]=1;"


def make_axis_enable_cmd(axis: int) -> str:
    return f"ax{axis}.mo=1"


def make_commutation_status_cmd(axis: int) -> str:
    return f"ax{axis}.SO"


# ============================================================================
# Timing Constants (seconds)
# ============================================================================

# Telemetry tick period
POLL_PERIOD: Final[float] = 0.05

# Minimum spacing between UI sample forwards
UI_UPDATE_INTERVAL: Final[float] = 0.1

# Request/response read timeout for manual reads
READ_TIMEOUT: Final[float] = 1.0

# Telemetry read timeout, kept below the tick period
POLL_READ_TIMEOUT: Final[float] = 0.04

# A flush read that stalls this long means the input is drained
FLUSH_STALL_TIMEOUT: Final[float] = 0.1

# Upper bound on a single flush
FLUSH_MAX_DURATION: Final[float] = 1.0

# pyserial per-read blocking timeout (granularity of read_once deadlines)
PORT_READ_TIMEOUT: Final[float] = 0.01

# Pause after motor toggle before motion commands
MOTOR_SETTLE_TIME: Final[float] = 0.05
