"""Tests for the serial transport session using FakeGimbalSerial."""

import logging
from typing import List

import pytest

from fakes.fake_serial import FakeGimbalSerial
from gimbal_lib.errors import GimbalConnectionError, SerialIOError
from gimbal_lib.models import ConnectionState, FrameTerminator, GimbalConfig
from gimbal_lib.transport import Transport


class FakePortFactory:
    """Hands out a fresh FakeGimbalSerial per open, or fails on demand."""

    def __init__(self) -> None:
        self.ports: List[FakeGimbalSerial] = []
        self.fail = False

    def __call__(self, port: str, baud: int, timeout_s: float) -> FakeGimbalSerial:
        if self.fail:
            raise OSError(f"could not open port {port}")
        fake = FakeGimbalSerial()
        self.ports.append(fake)
        return fake


def test_open_and_close() -> None:
    factory = FakePortFactory()
    transport = Transport(port_factory=factory)
    states: List[ConnectionState] = []
    transport.add_state_listener(states.append)

    transport.open("/dev/fake")

    assert transport.state == ConnectionState.OPEN
    assert transport.is_open
    assert transport.port_name == "/dev/fake"

    transport.close()

    assert transport.state == ConnectionState.DISCONNECTED
    assert not factory.ports[0].is_open
    assert states == [
        ConnectionState.CONNECTING,
        ConnectionState.OPEN,
        ConnectionState.DISCONNECTED,
    ]


def test_close_is_idempotent() -> None:
    transport = Transport(port_factory=FakePortFactory())
    transport.close()
    transport.open("/dev/fake")
    transport.close()
    transport.close()
    assert transport.state == ConnectionState.DISCONNECTED


def test_open_without_port_is_cancelled() -> None:
    transport = Transport(port_factory=FakePortFactory())

    with pytest.raises(GimbalConnectionError):
        transport.open(None)
    with pytest.raises(GimbalConnectionError):
        transport.open("")

    assert transport.state == ConnectionState.DISCONNECTED


def test_open_failure_leaves_disconnected() -> None:
    factory = FakePortFactory()
    factory.fail = True
    transport = Transport(port_factory=factory)

    with pytest.raises(GimbalConnectionError):
        transport.open("/dev/missing")

    assert transport.state == ConnectionState.DISCONNECTED
    assert not transport.is_open


def test_double_open_raises() -> None:
    transport = Transport(port_factory=FakePortFactory())
    transport.open("/dev/fake")

    with pytest.raises(GimbalConnectionError):
        transport.open("/dev/fake")

    transport.close()


def test_open_with_injected_port() -> None:
    fake = FakeGimbalSerial()
    transport = Transport()

    transport.open(None, serial_port=fake)

    assert transport.state == ConnectionState.OPEN
    transport.close()
    assert not fake.is_open


def test_write_without_connection_warns(caplog) -> None:
    """Writing with no open port is a logged no-op, not an error."""
    transport = Transport()

    with caplog.at_level(logging.WARNING):
        transport.send("R1[1]=1")

    assert any("No serial writer open" in r.message for r in caplog.records)


def test_write_failure_raises_serial_io_error() -> None:
    fake = FakeGimbalSerial()
    transport = Transport()
    transport.open(None, serial_port=fake)
    fake.fail_writes = True

    with pytest.raises(SerialIOError):
        transport.send("R1[1]=1")

    transport.close()


def test_send_and_read_reply() -> None:
    fake = FakeGimbalSerial(registers={"R1[10]": 2})
    transport = Transport()
    transport.open(None, serial_port=fake)

    transport.send("R1[10];")
    reply = transport.read_once(0.5)

    assert fake.writes == ["R1[10];"]
    assert reply == "R1[10];2;;"
    transport.close()


def test_read_assembles_chunked_reply() -> None:
    fake = FakeGimbalSerial(registers={"R1[31]": -1226}, chunk_size=3)
    transport = Transport()
    transport.open(None, serial_port=fake)

    transport.send("R1[31];")

    assert transport.read_once(0.5) == "R1[31];-1226;;"
    transport.close()


def test_read_timeout_returns_empty() -> None:
    """No reply within the timeout yields "" (pure commands have no reply)."""
    fake = FakeGimbalSerial()
    transport = Transport()
    transport.open(None, serial_port=fake)

    transport.send("R1[1]=1")

    assert transport.read_once(0.05) == ""
    transport.close()


def test_read_timeout_discards_partial_frame() -> None:
    fake = FakeGimbalSerial()
    transport = Transport()
    transport.open(None, serial_port=fake)

    fake.inject(b"R1[10];5;")

    assert transport.read_once(0.05) == ""
    transport.close()


def test_read_without_connection_returns_empty() -> None:
    assert Transport().read_once(0.01) == ""


def test_read_after_close_returns_empty() -> None:
    fake = FakeGimbalSerial()
    transport = Transport()
    transport.open(None, serial_port=fake)
    transport.close()

    assert transport.read_once(0.05) == ""


def test_any_delimiter_terminator() -> None:
    config = GimbalConfig(frame_terminator=FrameTerminator.ANY_DELIMITER)
    fake = FakeGimbalSerial()
    transport = Transport(config)
    transport.open(None, serial_port=fake)

    fake.inject(b"OK;")

    assert transport.read_once(0.5) == "OK;"
    transport.close()


def test_flush_discards_stale_input() -> None:
    fake = FakeGimbalSerial()
    transport = Transport()
    transport.open(None, serial_port=fake)
    fake.inject(b"R1[10];0;;R1[31];1;;garbage")

    transport.flush(timeout_s=0.05)

    assert fake.in_waiting == 0
    assert transport.read_once(0.05) == ""
    transport.close()


def test_flush_never_raises_when_closed() -> None:
    transport = Transport()
    transport.flush(timeout_s=0.01)


def test_reconnect_reopens_same_port() -> None:
    factory = FakePortFactory()
    transport = Transport(port_factory=factory)
    transport.open("/dev/fake", baud=230400)
    states: List[ConnectionState] = []
    transport.add_state_listener(states.append)

    transport.reconnect()

    assert transport.state == ConnectionState.OPEN
    assert len(factory.ports) == 2
    assert not factory.ports[0].is_open
    assert factory.ports[1].is_open
    assert states == [ConnectionState.RECONNECTING, ConnectionState.OPEN]
    transport.close()


def test_reconnect_failure_then_open_succeeds() -> None:
    """A failed reopen leaves no stale handle, and a later open works."""
    factory = FakePortFactory()
    transport = Transport(port_factory=factory)
    transport.open("/dev/fake")

    factory.fail = True
    with pytest.raises(GimbalConnectionError):
        transport.reconnect()

    assert transport.state == ConnectionState.DISCONNECTED
    assert not transport.is_open

    factory.fail = False
    transport.open("/dev/fake")

    assert transport.state == ConnectionState.OPEN
    transport.close()


def test_reconnect_without_previous_port_raises() -> None:
    transport = Transport(port_factory=FakePortFactory())

    with pytest.raises(GimbalConnectionError):
        transport.reconnect()
