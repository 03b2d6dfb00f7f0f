from __future__ import annotations

import asyncio

import pytest

from clipwatch.stability import Stability, wait_for_stable


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self, on_tick=None):
        self.now = 0.0
        self.sleeps: list[float] = []
        self._on_tick = on_tick

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        if self._on_tick is not None:
            self._on_tick(self.now)


def test_stable_after_writer_stops(tmp_path):
    segment = tmp_path / "record_001.mp4"
    segment.write_bytes(b"")
    last_write = {"at": 0.0}

    def writer(now: float) -> None:
        if now <= 10:
            with segment.open("ab") as fh:
                fh.write(b"frame")
            last_write["at"] = now

    clock = FakeClock(writer)
    result = asyncio.run(
        wait_for_stable(segment, timeout=30, poll_interval=5, sleep=clock.sleep, clock=clock)
    )

    assert result is Stability.STABLE
    assert last_write["at"] == 10
    assert 5 <= clock.now - last_write["at"] <= 10


def test_unchanged_file_is_stable_after_one_interval(tmp_path):
    segment = tmp_path / "record_002.mp4"
    segment.write_bytes(b"done")
    clock = FakeClock()

    result = asyncio.run(
        wait_for_stable(segment, timeout=30, poll_interval=5, sleep=clock.sleep, clock=clock)
    )

    assert result is Stability.STABLE
    assert clock.sleeps == [5]


def test_growing_file_times_out_at_deadline(tmp_path):
    segment = tmp_path / "record_003.mp4"
    segment.write_bytes(b"")

    def writer(_now: float) -> None:
        with segment.open("ab") as fh:
            fh.write(b"more")

    clock = FakeClock(writer)
    result = asyncio.run(
        wait_for_stable(segment, timeout=12, poll_interval=5, sleep=clock.sleep, clock=clock)
    )

    assert result is Stability.TIMEOUT
    assert clock.now == 12
    assert clock.sleeps == [5, 5, 2]


def test_missing_file(tmp_path):
    clock = FakeClock()
    result = asyncio.run(
        wait_for_stable(tmp_path / "gone.mp4", sleep=clock.sleep, clock=clock)
    )
    assert result is Stability.MISSING
    assert clock.sleeps == []


def test_file_removed_while_waiting(tmp_path):
    segment = tmp_path / "record_004.mp4"
    segment.write_bytes(b"data")
    clock = FakeClock(lambda _now: segment.unlink())

    result = asyncio.run(
        wait_for_stable(segment, timeout=30, poll_interval=5, sleep=clock.sleep, clock=clock)
    )

    assert result is Stability.MISSING


def test_rejects_non_positive_interval(tmp_path):
    with pytest.raises(ValueError):
        asyncio.run(wait_for_stable(tmp_path / "x.mp4", poll_interval=0))
