"""Session clock and HH:MM:SS rendering."""

import pytest

from pipeline.session_clock import SessionClock, format_duration


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.parametrize("seconds, expected", [
    (0, "00:00:00"),
    (59.9, "00:00:59"),
    (61, "00:01:01"),
    (3600, "01:00:00"),
    (3725, "01:02:05"),
    (-5, "00:00:00"),
    (360000, "100:00:00"),
])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


def test_not_started():
    clock = SessionClock(monotonic=FakeMonotonic())
    assert clock.running is False
    assert clock.elapsed() == 0.0
    assert clock.render() == "00:00:00"


def test_elapsed_while_running():
    mono = FakeMonotonic()
    clock = SessionClock(monotonic=mono)
    clock.start()
    mono.now += 65
    assert clock.running
    assert clock.render() == "00:01:05"
    assert clock.started_at is not None


def test_stop_freezes_duration():
    mono = FakeMonotonic()
    clock = SessionClock(monotonic=mono)
    clock.start()
    mono.now += 10
    clock.stop()
    mono.now += 500
    assert clock.running is False
    assert clock.render() == "00:00:10"


def test_restart_resets():
    mono = FakeMonotonic()
    clock = SessionClock(monotonic=mono)
    clock.start()
    mono.now += 30
    clock.stop()
    clock.start()
    mono.now += 2
    assert clock.render() == "00:00:02"
