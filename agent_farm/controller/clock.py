"""Single driving clock for periodic subsystem updates."""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable

import structlog

logger = structlog.get_logger()

TickFn = Callable[[], "Awaitable[Any] | Any"]


@dataclass
class TickJob:
    name: str
    interval: float
    fn: TickFn
    next_run: float = 0.0
    runs: int = 0


class TickDriver:
    """Invokes each registered job's update method at its own interval.

    One asyncio task owns the loop. Async jobs run as their own tasks so a
    slow job never holds up the others; a job still running when it comes
    due again is skipped for that interval. A failing job is logged and
    retried at its next interval.
    """

    def __init__(
        self,
        resolution: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._resolution = resolution
        self._clock = clock
        self._jobs: dict[str, TickJob] = {}
        self._in_flight: dict[str, asyncio.Future[Any]] = {}
        self._running = False
        self._task: asyncio.Task[None] | None = None

    def register(self, name: str, interval: float, fn: TickFn, run_immediately: bool = False) -> None:
        """Schedule ``fn`` every ``interval`` seconds."""
        if interval <= 0:
            raise ValueError(f"Tick interval for {name} must be positive")
        first = self._clock() if run_immediately else self._clock() + interval
        self._jobs[name] = TickJob(name=name, interval=interval, fn=fn, next_run=first)

    @property
    def jobs(self) -> list[TickJob]:
        return list(self._jobs.values())

    @property
    def running(self) -> bool:
        return self._running

    def in_flight(self) -> list[str]:
        return list(self._in_flight)

    async def run_due(self) -> list[str]:
        """Start every job whose time has come; returns the names started."""
        now = self._clock()
        ran: list[str] = []
        for job in list(self._jobs.values()):
            if job.next_run > now:
                continue
            job.next_run = now + job.interval
            if job.name in self._in_flight:
                logger.debug("tick_job_still_running", job=job.name)
                continue
            job.runs += 1
            ran.append(job.name)
            try:
                outcome = job.fn()
            except Exception as e:
                logger.error("tick_job_failed", job=job.name, error=str(e))
                continue
            if inspect.isawaitable(outcome):
                future = asyncio.ensure_future(outcome)
                self._in_flight[job.name] = future
                future.add_done_callback(partial(self._job_done, job.name))
        return ran

    def _job_done(self, name: str, future: asyncio.Future[Any]) -> None:
        self._in_flight.pop(name, None)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("tick_job_failed", job=name, error=str(error))

    async def join(self) -> None:
        """Wait for every async job currently in flight."""
        if self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("tick_driver_started", jobs=[j.name for j in self._jobs.values()])

    async def stop(self) -> None:
        """Stop the background loop and cancel jobs still running."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        pending = list(self._in_flight.values())
        for future in pending:
            future.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("tick_driver_stopped")

    async def _loop(self) -> None:
        while self._running:
            await self.run_due()
            await asyncio.sleep(self._resolution)
