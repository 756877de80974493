"""Tests for the periodic task loop."""
import asyncio
import logging

from rag_mse.core.scheduler import PeriodicTask


class Recorder:
    def __init__(self, fail_on: set[int] | None = None):
        self.calls = 0
        self.fail_on = fail_on or set()

    async def __call__(self):
        self.calls += 1
        if self.calls in self.fail_on:
            raise RuntimeError(f"tick {self.calls} failed")


async def no_sleep(seconds: float) -> None:
    await asyncio.sleep(0)


async def test_run_stops_after_max_ticks():
    recorder = Recorder()
    slept: list[float] = []

    async def sleep(seconds: float) -> None:
        slept.append(seconds)

    await PeriodicTask("test", recorder, 30, sleep=sleep).run(max_ticks=3)

    assert recorder.calls == 3
    assert slept == [30, 30]


async def test_failing_tick_is_logged_and_loop_continues(caplog):
    recorder = Recorder(fail_on={1})

    with caplog.at_level(logging.ERROR, logger="rag_mse.core.scheduler"):
        await PeriodicTask("reminders", recorder, 1, sleep=no_sleep).run(max_ticks=2)

    assert recorder.calls == 2
    assert "Periodic task tick failed" in caplog.text
    assert any(getattr(r, "task", None) == "reminders" for r in caplog.records)


async def test_overlapping_tick_is_skipped():
    release = asyncio.Event()
    calls = 0

    async def slow():
        nonlocal calls
        calls += 1
        await release.wait()

    task = PeriodicTask("slow", slow, 1)
    first = asyncio.create_task(task.tick())
    await asyncio.sleep(0)

    assert await task.tick() is False
    release.set()
    assert await first is True
    assert calls == 1
    assert await task.tick() is True


async def test_start_and_stop():
    recorder = Recorder()
    task = PeriodicTask("loop", recorder, 60, sleep=no_sleep)

    handle = task.start()
    assert task.start() is handle
    for _ in range(5):
        await asyncio.sleep(0)
    assert task.is_running

    await task.stop()
    assert not task.is_running
    assert handle.done()
    assert recorder.calls >= 1

    # Stopping twice is harmless
    await task.stop()
