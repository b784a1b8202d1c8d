"""Tests for exclusive wire access between the poller and one-off operations."""

import threading
import time
from typing import List

import pytest

from gimbal_lib.scheduler import AccessScheduler


def test_run_exclusive_returns_result_and_releases() -> None:
    scheduler = AccessScheduler()

    assert scheduler.run_exclusive(lambda a, b: a + b, 2, b=3) == 5
    assert scheduler.depth == 0
    assert not scheduler.pause_requested


def test_nested_exclusive_shares_outer_hold() -> None:
    scheduler = AccessScheduler()
    depths: List[int] = []

    def inner() -> None:
        depths.append(scheduler.depth)

    with scheduler.exclusive():
        depths.append(scheduler.depth)
        scheduler.run_exclusive(inner)
        depths.append(scheduler.depth)

    assert depths == [1, 2, 1]
    assert scheduler.depth == 0
    assert not scheduler.pause_requested


def test_exception_releases_and_propagates() -> None:
    scheduler = AccessScheduler()

    def boom() -> None:
        raise RuntimeError("op failed")

    with pytest.raises(RuntimeError, match="op failed"):
        scheduler.run_exclusive(boom)

    assert scheduler.depth == 0
    assert not scheduler.pause_requested
    assert scheduler.direct_access(lambda: None)


def test_direct_access_runs_when_free() -> None:
    scheduler = AccessScheduler()
    ran = []

    assert scheduler.direct_access(lambda: ran.append(True)) is True
    assert ran == [True]
    assert not scheduler.cycle_in_progress


def test_direct_access_skips_while_excluded() -> None:
    scheduler = AccessScheduler()
    ran = []

    with scheduler.exclusive():
        assert scheduler.pause_requested
        assert scheduler.direct_access(lambda: ran.append(True)) is False

    assert ran == []
    assert scheduler.direct_access(lambda: ran.append(True)) is True


def test_direct_access_clears_cycle_flag_on_failure() -> None:
    scheduler = AccessScheduler()

    def bad_tick() -> None:
        raise ValueError("tick failed")

    with pytest.raises(ValueError):
        scheduler.direct_access(bad_tick)

    assert not scheduler.cycle_in_progress
    scheduler.run_exclusive(lambda: None)


def test_exclusive_waits_for_in_flight_tick() -> None:
    """An operation starts only after the poller's current tick finishes."""
    scheduler = AccessScheduler()
    tick_started = threading.Event()
    events: List[str] = []

    def slow_tick() -> None:
        tick_started.set()
        time.sleep(0.2)
        events.append("tick done")

    poller = threading.Thread(target=scheduler.direct_access, args=(slow_tick,))
    poller.start()
    assert tick_started.wait(1.0)

    with scheduler.exclusive():
        events.append("op")

    poller.join(1.0)
    assert events == ["tick done", "op"]


def test_tick_may_use_exclusive_helpers() -> None:
    """The poller's own tick can enter exclusive sections without deadlock."""
    scheduler = AccessScheduler()
    result = []

    def tick() -> None:
        result.append(scheduler.run_exclusive(lambda: 42))

    assert scheduler.direct_access(tick)
    assert result == [42]


def test_second_thread_queues_behind_owner() -> None:
    scheduler = AccessScheduler()
    order: List[str] = []

    def other() -> None:
        with scheduler.exclusive():
            order.append("other")

    with scheduler.exclusive():
        thread = threading.Thread(target=other)
        thread.start()
        time.sleep(0.1)
        order.append("owner")

    thread.join(1.0)
    assert order == ["owner", "other"]
    assert scheduler.depth == 0
    assert not scheduler.pause_requested


def test_pause_held_while_waiters_queued() -> None:
    """Between two queued operations the poller cannot slip in a tick."""
    scheduler = AccessScheduler()
    release_first = threading.Event()
    first_holding = threading.Event()
    skipped = []

    def first() -> None:
        with scheduler.exclusive():
            first_holding.set()
            release_first.wait(1.0)

    def second() -> None:
        with scheduler.exclusive():
            skipped.append(scheduler.direct_access(lambda: None))

    t1 = threading.Thread(target=first)
    t1.start()
    assert first_holding.wait(1.0)

    t2 = threading.Thread(target=second)
    t2.start()
    time.sleep(0.05)

    assert scheduler.direct_access(lambda: None) is False
    release_first.set()

    t1.join(1.0)
    t2.join(1.0)
    assert skipped == [False]
    assert not scheduler.pause_requested


def test_release_by_non_owner_raises() -> None:
    scheduler = AccessScheduler()

    with pytest.raises(RuntimeError):
        scheduler._release()
