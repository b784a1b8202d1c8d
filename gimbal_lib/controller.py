"""High-level controller for the two-axis gimbal drive."""

import itertools
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from gimbal_lib import parsing, protocol
from gimbal_lib.errors import (
    CalibrationError,
    CommutationTimeout,
    GimbalConnectionError,
    NotReadyError,
)
from gimbal_lib.models import ConnectionState, GimbalConfig, GimbalListener, TelemetrySample
from gimbal_lib.motion import MotionStep, MotionTask
from gimbal_lib.parsing import Pair
from gimbal_lib.poller import TelemetryPoller
from gimbal_lib.scheduler import AccessScheduler
from gimbal_lib.transport import PortFactory, SerialLike, Transport

logger = logging.getLogger(__name__)


class GimbalController:
    """High-level controller orchestrating gimbal drive operations.

    Owns the transport session, the exclusive-access scheduler and the
    telemetry poller. Every manual operation holds exclusive access, so a
    running telemetry poll pauses itself for the duration without being
    stopped.
    """

    def __init__(
        self,
        config: Optional[GimbalConfig] = None,
        listener: Optional[GimbalListener] = None,
        port_factory: Optional[PortFactory] = None,
    ) -> None:
        """Initialize controller.

        Args:
            config: Link configuration. Defaults to GimbalConfig().
            listener: UI/recording collaborator receiving samples and
                      connection state changes.
            port_factory: Serial port opener (for testing). Defaults to pyserial.
        """
        self._config = config or GimbalConfig()
        self._listener = listener
        self._transport = Transport(self._config, port_factory=port_factory)
        self._scheduler = AccessScheduler()
        self._poller = TelemetryPoller(self._transport, self._scheduler, listener, self._config)

        if listener is not None:
            self._transport.add_state_listener(listener.on_connection_state_change)

        self._motor_on = False
        self._jog_tr = 0
        self._jog_el = 0

        self._motion: Optional[MotionTask] = None
        self._motion_lock = threading.Lock()

    # ========================================================================
    # Connection Management
    # ========================================================================

    def connect(
        self,
        port: Optional[str] = None,
        baud: Optional[int] = None,
        serial_port: Optional[SerialLike] = None,
    ) -> None:
        """Open the serial link.

        Args:
            port: Serial port name (e.g. "/dev/ttyUSB0"). Required if serial_port not given.
            baud: Baud rate; defaults to the configured rate.
            serial_port: Pre-configured serial port object (for testing).

        Raises:
            GimbalConnectionError: If no port is given, already connected,
                                   or the port fails to open
        """
        logger.info(f"Connecting to gimbal on {port or 'injected port'}...")
        self._transport.open(port, baud, serial_port=serial_port)
        self._motor_on = False

    def disconnect(self) -> None:
        """Stop background activity, then release remote control and close the port."""
        self.stop_motion()

        # Stopping the poller already sends the stream-disable directive
        if self._poller.is_running:
            self._poller.stop()
        elif self._transport.is_open:
            self.send_msg(protocol.STREAM_DISABLE_CMD)

        self._transport.close()
        self._motor_on = False
        logger.info("Disconnected")

    def reconnect(self) -> None:
        """Reopen the same port, resuming live data if it was running.

        Raises:
            GimbalConnectionError: If the port cannot be reopened
        """
        was_polling = self._poller.is_running
        period = self._poller.period_s
        if was_polling:
            self._poller.stop()

        with self._scheduler.exclusive():
            self._transport.reconnect()
        self._motor_on = False

        if was_polling:
            self._poller.start(period)

    def is_connected(self) -> bool:
        """Check if the transport is open."""
        return self._transport.state is ConnectionState.OPEN and self._transport.is_open

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._transport.state

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def scheduler(self) -> AccessScheduler:
        return self._scheduler

    @property
    def poller(self) -> TelemetryPoller:
        return self._poller

    @property
    def motor_on(self) -> bool:
        return self._motor_on

    # ========================================================================
    # Wire Operations
    # ========================================================================

    def send_msg(self, command: str) -> None:
        """Send one command line with exclusive access (fire-and-forget)."""
        self._scheduler.run_exclusive(self._transport.send, command)

    def read_msg(self, command: str, timeout_s: Optional[float] = None) -> str:
        """Send a command and read its response frame.

        Returns:
            Response text, or "" if the drive did not answer in time
        """
        with self._scheduler.exclusive():
            self._transport.send(command)
            return self._transport.read_once(timeout_s)

    def query(self, command: str, timeout_s: Optional[float] = None) -> List[Pair]:
        """Send a read command and parse the response into key/value pairs."""
        return parsing.parse_pairs(self.read_msg(command, timeout_s))

    def flush(self) -> None:
        """Drain stale input with exclusive access."""
        self._scheduler.run_exclusive(self._transport.flush)

    # ========================================================================
    # Live Data
    # ========================================================================

    def start_live_data(self, period_s: Optional[float] = None) -> None:
        """Start the telemetry poll (no-op if already running).

        Raises:
            GimbalConnectionError: If not connected
        """
        if not self.is_connected():
            raise GimbalConnectionError("Cannot start live data: not connected")
        if self._poller.is_running:
            return
        self._poller.start(period_s)

    def stop_live_data(self) -> None:
        if self._poller.is_running:
            self._poller.stop()

    @property
    def live_data_running(self) -> bool:
        return self._poller.is_running

    @property
    def latest_sample(self) -> Optional[TelemetrySample]:
        return self._poller.latest_sample

    # ========================================================================
    # Motion
    # ========================================================================

    def set_motor(self, on: bool) -> None:
        """Take remote control and switch both axes on or off.

        Raises:
            NotReadyError: If not connected
        """
        if not self.is_connected():
            raise NotReadyError("No connection to device")

        if not on:
            self.stop_motion()

        with self._scheduler.exclusive():
            self._transport.send(protocol.STREAM_ENABLE_CMD)
            self._transport.send(protocol.MOTOR_ON_CMD if on else protocol.MOTOR_OFF_CMD)
        self._motor_on = on
        logger.info(f"Motor {'ON' if on else 'OFF'}")

    def _ensure_ready_to_move(self) -> None:
        if not self.is_connected():
            raise NotReadyError("No connection to device")
        if not self._motor_on:
            raise NotReadyError("Motors are off")

    def move_to_angles(
        self,
        tr_deg: float,
        el_deg: float,
        velocity_deg_s: float = protocol.DEFAULT_VELOCITY_DEG_S,
    ) -> str:
        """Move both axes to absolute angles.

        Returns:
            The command sent

        Raises:
            NotReadyError: If disconnected or motors are off
            ValueError: If velocity is out of range
        """
        self._ensure_ready_to_move()
        if not (protocol.VELOCITY_MIN_DEG_S <= velocity_deg_s <= protocol.VELOCITY_MAX_DEG_S):
            raise ValueError(
                f"Velocity must be {protocol.VELOCITY_MIN_DEG_S}-{protocol.VELOCITY_MAX_DEG_S} "
                f"deg/s, got {velocity_deg_s}"
            )

        command = protocol.make_move_command(tr_deg, el_deg, velocity_deg_s)
        logger.info(f"Moving to TR={tr_deg} EL={el_deg} at {velocity_deg_s} deg/s")
        self.send_msg(command)
        return command

    def move_to_position(
        self, name: str, velocity_deg_s: float = protocol.DEFAULT_VELOCITY_DEG_S
    ) -> str:
        """Move to a named preset position (home, top_right, ...)."""
        if name not in protocol.PRESET_POSITIONS:
            raise ValueError(
                f"Unknown position '{name}', expected one of {sorted(protocol.PRESET_POSITIONS)}"
            )
        tr, el = protocol.PRESET_POSITIONS[name]
        return self.move_to_angles(tr, el, velocity_deg_s)

    def joystick(self, direction: str) -> Tuple[int, int]:
        """Step the jog counters and send them.

        Returns:
            (traverse, elevation) jog counters after the step
        """
        self._ensure_ready_to_move()
        direction = direction.upper()
        if direction not in protocol.JOYSTICK_DIRECTIONS:
            raise ValueError(f"Unknown joystick direction '{direction}'")

        if direction == "UP":
            self._jog_el += 1
        elif direction == "DOWN":
            self._jog_el -= 1
        elif direction == "RIGHT":
            self._jog_tr += 1
        elif direction == "LEFT":
            self._jog_tr -= 1
        else:
            self._jog_tr = 0
            self._jog_el = 0

        self.send_msg(protocol.make_jog_command(self._jog_tr, self._jog_el))
        return self._jog_tr, self._jog_el

    def run_scenario(self, name: str) -> bool:
        """Start a motion program.

        "scan" and "demo1" run on the drive. "demo2" is host-driven: it
        alternates between two targets every second until called again,
        which stops it (as does motor off or disconnect). Any running
        host-driven program is also stopped by a "demo2" call.

        Returns:
            True if a program is running afterwards, False if one was stopped
        """
        self._ensure_ready_to_move()

        if name in protocol.REPEATING_SCENARIOS:
            if self.stop_motion():
                return False
            self._start_motion(
                name,
                self._make_cycle_step(protocol.REPEATING_SCENARIOS[name]),
                protocol.REPEATING_SCENARIO_INTERVAL,
            )
            return True

        if name not in protocol.SCENARIO_COMMANDS:
            known = sorted([*protocol.SCENARIO_COMMANDS, *protocol.REPEATING_SCENARIOS])
            raise ValueError(f"Unknown scenario '{name}', expected one of {known}")
        logger.info(f"Running scenario {name}")
        self.send_msg(protocol.SCENARIO_COMMANDS[name])
        return True

    def play_tune(self) -> None:
        self._ensure_ready_to_move()
        self.send_msg(protocol.PLAY_TUNE_CMD)

    def save_settings(self) -> None:
        """Persist drive parameters."""
        if not self.is_connected():
            raise NotReadyError("No connection to device")
        with self._scheduler.exclusive():
            self._transport.send(protocol.SAVE_SETTINGS_CMD)
            time.sleep(protocol.MOTOR_SETTLE_TIME)
        logger.info("Drive settings saved")

    # ========================================================================
    # Host-Driven Motion Programs
    # ========================================================================

    @property
    def motion_running(self) -> bool:
        motion = self._motion
        return motion is not None and motion.is_running

    @property
    def motion_name(self) -> Optional[str]:
        motion = self._motion
        return motion.name if motion is not None and motion.is_running else None

    def stop_motion(self) -> bool:
        """Cancel the running host-driven program, if any.

        Returns:
            True if a running program was stopped
        """
        with self._motion_lock:
            motion, self._motion = self._motion, None
        if motion is None or not motion.is_running:
            return False
        motion.stop()
        return True

    def _start_motion(self, name: str, step: MotionStep, interval_s: float) -> None:
        motion = MotionTask(name, step, interval_s)
        with self._motion_lock:
            self._motion = motion
        motion.start()

    def _make_cycle_step(self, commands: Tuple[str, ...]) -> MotionStep:
        pending = itertools.cycle(commands)

        def step() -> bool:
            self.send_msg(next(pending))
            return True

        return step

    def start_torque_test(
        self,
        min_deg: float,
        max_deg: float,
        reps: int,
        velocity_deg_s: float = protocol.DEFAULT_VELOCITY_DEG_S,
        on_recording_start: Optional[Callable[[], None]] = None,
    ) -> None:
        """Cycle the traverse axis between two angles for a number of reps.

        Motors are switched on and live data started if needed. The axis is
        sent to min_deg first; each arrival within the tolerance window sends
        it to the other end and counts half a rep, with the first arrival at
        min_deg counting zero. ``on_recording_start`` is called at that first
        arrival. When the reps are done the motors are switched off.

        Raises:
            NotReadyError: If not connected
            ValueError: If the angles, reps or velocity are invalid
        """
        if not self.is_connected():
            raise NotReadyError("No connection to device")
        if not (protocol.VELOCITY_MIN_DEG_S <= velocity_deg_s <= protocol.VELOCITY_MAX_DEG_S):
            raise ValueError(
                f"Velocity must be {protocol.VELOCITY_MIN_DEG_S}-{protocol.VELOCITY_MAX_DEG_S} "
                f"deg/s, got {velocity_deg_s}"
            )
        if reps <= 0:
            raise ValueError(f"reps must be positive, got {reps}")
        if abs(max_deg - min_deg) < 2 * protocol.TORQUE_TEST_TOLERANCE_DEG:
            raise ValueError(f"Angle range {min_deg}..{max_deg} is too small")

        self.stop_motion()
        if not self._motor_on:
            self.set_motor(True)
            time.sleep(protocol.MOTOR_SETTLE_TIME)
        self.start_live_data()

        logger.info(
            f"Torque test: {min_deg}..{max_deg} deg, {reps} reps at {velocity_deg_s} deg/s"
        )
        self.send_msg(protocol.make_profile_move_cmd(min_deg, velocity_deg_s))

        tolerance = protocol.TORQUE_TEST_TOLERANCE_DEG
        cycles = -0.5
        moving_to_max = False
        recording_started = False

        def step() -> bool:
            nonlocal cycles, moving_to_max, recording_started

            sample = self._poller.latest_sample
            if sample is not None:
                angle = sample.pos_tr
                if moving_to_max and abs(angle - max_deg) < tolerance:
                    self.send_msg(protocol.make_profile_move_cmd(min_deg))
                    moving_to_max = False
                    cycles += 0.5
                elif not moving_to_max and abs(angle - min_deg) < tolerance:
                    self.send_msg(protocol.make_profile_move_cmd(max_deg))
                    moving_to_max = True
                    cycles += 0.5
                    if not recording_started:
                        recording_started = True
                        if on_recording_start is not None:
                            on_recording_start()

            if cycles >= reps:
                logger.info(f"Torque test complete after {reps} reps")
                self.set_motor(False)
                return False
            return True

        self._start_motion("torque_test", step, protocol.TORQUE_TEST_CHECK_INTERVAL)

    # ========================================================================
    # Installation Setup
    # ========================================================================

    def set_zero_angles(self) -> Dict[int, float]:
        """Make the current pose the zero angle on both axes.

        Reads the stored encoder offsets and current positions (retrying on
        garbled replies), stores offset - position as the new offset, and
        restarts the encoders. Motors are switched off first.

        Returns:
            New offset per axis number

        Raises:
            NotReadyError: If not connected
            CalibrationError: If no valid reading after the retry budget
        """
        if not self.is_connected():
            raise NotReadyError("No connection to device")

        self.stop_motion()
        logger.info("Setting zero angles...")
        with self._scheduler.exclusive():
            self._transport.flush()

            readings = self._read_calibration_values()
            offsets = {
                axis: readings[axis][0] - readings[axis][1] for axis in protocol.CALIBRATION_KEYS
            }

            if self._motor_on:
                self.set_motor(False)

            for axis, offset in offsets.items():
                for command in protocol.make_offset_commands(axis, offset):
                    logger.debug(f"Calibration write: {command}")
                    self._transport.send(command)

            time.sleep(protocol.CALIBRATION_SETTLE_TIME)
            self._transport.flush()

        logger.info(f"Zero angles set, new offsets: {offsets}")
        return offsets

    def _read_calibration_values(self) -> Dict[int, Tuple[float, float]]:
        """Read (offset, position) per axis with bounded retries."""
        for attempt in range(1, protocol.CALIBRATION_MAX_ATTEMPTS + 1):
            text = self.read_msg(protocol.CALIBRATION_READ_CMD)
            logger.debug(f"Calibration read attempt {attempt}: {text!r}")
            pairs = parsing.parse_pairs(text)

            values: Dict[int, Tuple[float, float]] = {}
            for axis, (offset_key, angle_key) in protocol.CALIBRATION_KEYS.items():
                offset = parsing.get_value(pairs, offset_key)
                angle = parsing.get_value(pairs, angle_key)
                if isinstance(offset, (int, float)) and isinstance(angle, (int, float)):
                    values[axis] = (offset, angle)

            if len(values) == len(protocol.CALIBRATION_KEYS):
                return values

            logger.debug(f"Invalid calibration values on attempt {attempt}")
            if attempt < protocol.CALIBRATION_MAX_ATTEMPTS:
                time.sleep(protocol.CALIBRATION_RETRY_DELAY)

        raise CalibrationError(
            f"Failed to read valid offset and angle values after "
            f"{protocol.CALIBRATION_MAX_ATTEMPTS} attempts"
        )

    def commutation(self, axis: int = 2, timeout_s: float = protocol.COMMUTATION_TIMEOUT) -> None:
        """Run the motor commutation procedure on one axis.

        Motors go off, the drive enters commutation mode, the axis is
        enabled, and its status is polled until it reports done.

        Raises:
            NotReadyError: If not connected
            CommutationTimeout: If the axis does not report done in time
        """
        if not self.is_connected():
            raise NotReadyError("No connection to device")
        if axis not in protocol.CALIBRATION_KEYS:
            raise ValueError(f"Axis must be one of {sorted(protocol.CALIBRATION_KEYS)}, got {axis}")

        self.stop_motion()
        logger.info(f"Performing commutation on axis {axis}...")
        with self._scheduler.exclusive():
            if self._motor_on:
                self.set_motor(False)

            self._transport.send(protocol.COMMUTATION_ENTER_CMD)
            time.sleep(protocol.COMMUTATION_STEP_DELAY)
            self._transport.flush()

            self._transport.send(protocol.make_commutation_setup_cmd(axis))
            time.sleep(protocol.COMMUTATION_STEP_DELAY)
            self._transport.send(protocol.make_axis_enable_cmd(axis))

            status_cmd = protocol.make_commutation_status_cmd(axis)
            start = time.monotonic()
            while True:
                if time.monotonic() - start > timeout_s:
                    raise CommutationTimeout(
                        f"Commutation on axis {axis} did not finish within {timeout_s}s"
                    )

                time.sleep(protocol.COMMUTATION_POLL_INTERVAL)
                reply = self.read_msg(status_cmd)
                if parsing.parse_status_flag(reply) == 1:
                    break

            self._transport.send(protocol.COMMUTATION_EXIT_CMD)
            time.sleep(protocol.COMMUTATION_SETTLE_TIME)

        logger.info(f"Commutation on axis {axis} complete")
