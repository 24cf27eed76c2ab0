"""Fixed-interval job runner for the compile and reconcile passes."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from aptfleet.errors import KeyUnavailable, StoreLocked

logger = logging.getLogger(__name__)


@dataclass
class Job:
    name: str
    interval: float
    func: Callable[[], Any]
    task: asyncio.Task | None = field(default=None, repr=False)
    runs: int = 0
    failures: int = 0
    skipped: int = 0
    disabled: bool = False

    @property
    def in_flight(self) -> bool:
        return self.task is not None and not self.task.done()


class Scheduler:
    """Runs each job in a worker thread every `interval` seconds.

    A tick whose predecessor is still running is skipped rather than queued, and
    ticks of different jobs never overlap on one node. A job that fails with
    KeyUnavailable is disabled instead of being retried.
    """

    def __init__(self):
        self.jobs: dict[str, Job] = {}
        self._lock: asyncio.Lock | None = None

    @property
    def lock(self) -> asyncio.Lock:
        # created lazily so it binds to the running loop
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def add_job(self, name: str, interval: float, func: Callable[[], Any]) -> Job:
        if name in self.jobs:
            raise ValueError(f"Job {name} is already scheduled")
        job = Job(name=name, interval=interval, func=func)
        self.jobs[name] = job
        return job

    async def _run_tick(self, job: Job) -> None:
        async with self.lock:
            try:
                await asyncio.to_thread(job.func)
                job.runs += 1
            except StoreLocked as e:
                job.skipped += 1
                logger.info(f"Skipping {job.name} tick: {e}")
            except KeyUnavailable as e:
                # stays off until the process is restarted
                job.failures += 1
                job.disabled = True
                logger.critical(f"{job.name} disabled: {e}")
            except Exception as e:
                job.failures += 1
                logger.exception(f"{job.name} tick failed, retrying in {job.interval}s: {e}")

    def launch(self, job: Job) -> bool:
        """Start a tick of job unless the previous one is still running or the job is disabled."""
        if job.disabled:
            return False
        if job.in_flight:
            job.skipped += 1
            logger.info(f"{job.name} is still running, skipping this tick")
            return False
        job.task = asyncio.create_task(self._run_tick(job), name=job.name)
        return True

    async def _loop(self, job: Job, stop: asyncio.Event) -> None:
        while not stop.is_set() and not job.disabled:
            self.launch(job)
            try:
                await asyncio.wait_for(stop.wait(), timeout=job.interval)
            except TimeoutError:
                pass

    async def run(self, stop: asyncio.Event) -> None:
        """Tick every job until stop is set, then wait for in-flight ticks to finish."""
        logger.info(f"Scheduler started with jobs: {', '.join(self.jobs)}")
        await asyncio.gather(*(self._loop(job, stop) for job in self.jobs.values()))
        pending = [job.task for job in self.jobs.values() if job.in_flight]
        if pending:
            logger.info(f"Waiting for {len(pending)} running job(s) to finish")
            await asyncio.gather(*pending)
        logger.info("Scheduler stopped")

    async def run_once(self) -> None:
        """Run every job once, one after the other."""
        for job in self.jobs.values():
            await self._run_tick(job)
