"""Tests for TickDriver."""

import asyncio

import pytest

from agent_farm.controller.clock import TickDriver


@pytest.mark.asyncio
async def test_jobs_run_at_their_intervals(clock):
    """Test each job fires on its own interval."""
    driver = TickDriver(clock=clock)
    calls = []
    driver.register("fast", 1.0, lambda: calls.append("fast"))
    driver.register("slow", 3.0, lambda: calls.append("slow"))

    for _ in range(6):
        clock.advance(1.0)
        await driver.run_due()

    assert calls.count("fast") == 6
    assert calls.count("slow") == 2


@pytest.mark.asyncio
async def test_async_jobs_are_awaited(clock):
    driver = TickDriver(clock=clock)
    calls = []

    async def job():
        await asyncio.sleep(0)
        calls.append("ran")

    driver.register("async", 1.0, job, run_immediately=True)

    assert await driver.run_due() == ["async"]
    await driver.join()
    assert calls == ["ran"]
    assert driver.in_flight() == []


@pytest.mark.asyncio
async def test_nothing_due_before_first_interval(clock):
    driver = TickDriver(clock=clock)
    driver.register("job", 5.0, lambda: None)

    assert await driver.run_due() == []


@pytest.mark.asyncio
async def test_failing_job_does_not_stop_others(clock):
    """Test a raising job is logged and the rest still run."""
    driver = TickDriver(clock=clock)
    calls = []

    def broken():
        raise RuntimeError("boom")

    driver.register("broken", 1.0, broken)
    driver.register("ok", 1.0, lambda: calls.append("ok"))
    clock.advance(1.0)

    assert await driver.run_due() == ["broken", "ok"]
    assert calls == ["ok"]

    clock.advance(1.0)
    await driver.run_due()
    assert [j.runs for j in driver.jobs] == [2, 2]


def test_rejects_non_positive_interval(clock):
    driver = TickDriver(clock=clock)
    with pytest.raises(ValueError):
        driver.register("bad", 0, lambda: None)


@pytest.mark.asyncio
async def test_start_and_stop():
    """Test the background loop runs due jobs until stopped."""
    driver = TickDriver(resolution=0.01)
    calls = []
    driver.register("job", 0.01, lambda: calls.append(1), run_immediately=True)

    await driver.start()
    assert driver.running is True
    await asyncio.sleep(0.05)
    await driver.stop()

    assert driver.running is False
    assert calls


@pytest.mark.asyncio
async def test_slow_job_does_not_hold_up_others(clock):
    """Test a long-running async job is skipped while in flight and never blocks fast jobs."""
    driver = TickDriver(clock=clock)
    release = asyncio.Event()
    calls = []

    async def slow():
        calls.append("slow")
        await release.wait()

    driver.register("slow", 1.0, slow)
    driver.register("fast", 1.0, lambda: calls.append("fast"))

    for _ in range(5):
        clock.advance(1.0)
        await driver.run_due()
        await asyncio.sleep(0)

    assert calls.count("fast") == 5
    assert calls.count("slow") == 1
    assert driver.in_flight() == ["slow"]

    release.set()
    await driver.join()
    clock.advance(1.0)
    assert await driver.run_due() == ["slow", "fast"]
    await driver.join()
    assert calls.count("slow") == 2


@pytest.mark.asyncio
async def test_failing_async_job_is_logged(clock):
    driver = TickDriver(clock=clock)

    async def broken():
        raise RuntimeError("boom")

    driver.register("broken", 1.0, broken, run_immediately=True)

    assert await driver.run_due() == ["broken"]
    await driver.join()
    assert driver.in_flight() == []


@pytest.mark.asyncio
async def test_stop_cancels_in_flight_jobs():
    driver = TickDriver(resolution=0.01)

    async def forever():
        await asyncio.Event().wait()

    driver.register("forever", 0.01, forever, run_immediately=True)
    await driver.start()
    await asyncio.sleep(0.05)
    assert driver.in_flight() == ["forever"]

    await driver.stop()

    assert driver.in_flight() == []
