# vibecurve/scheduler.py
import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional


class JobKind(Enum):
    DCA_INTERVAL = "DCA_INTERVAL"
    GRID_LEVEL = "GRID_LEVEL"
    MOMENTUM = "MOMENTUM"
    MEAN_REVERSION = "MEAN_REVERSION"
    PRICE_MONITOR = "PRICE_MONITOR"
    SCAN_LOOP = "SCAN_LOOP"


# A recurring callback returns True to stop its own job.
JobCallback = Callable[[], Awaitable[Optional[bool]]]


@dataclass(slots=True)
class Job:
    id: int
    owner: str
    kind: JobKind
    next_fire: float
    interval: Optional[float] = None
    label: str = ""
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def recurring(self) -> bool:
        return self.interval is not None


class Scheduler:
    """
    One place for every timer in the process.
    Jobs are asyncio tasks grouped by owner (a strategy id, or the scan loop),
    so stopping an owner cancels all of its timers at once and nothing leaks.
    """
    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self._jobs: Dict[int, Job] = {}
        self._ids = itertools.count(1)

    def schedule_once(self, owner: str, kind: JobKind, delay: float,
                      callback: JobCallback, label: str = "") -> Job:
        job = Job(id=next(self._ids), owner=owner, kind=kind,
                  next_fire=time.time() + delay, label=label)
        job.task = asyncio.create_task(self._run_once(job, delay, callback))
        self._register(job)
        return job

    def schedule_every(self, owner: str, kind: JobKind, interval: float,
                       callback: JobCallback, label: str = "",
                       immediate: bool = False) -> Job:
        first_delay = 0.0 if immediate else interval
        job = Job(id=next(self._ids), owner=owner, kind=kind,
                  next_fire=time.time() + first_delay, interval=interval, label=label)
        job.task = asyncio.create_task(self._run_every(job, first_delay, callback))
        self._register(job)
        return job

    def _register(self, job: Job) -> None:
        self._jobs[job.id] = job
        job.task.add_done_callback(lambda _t, job_id=job.id: self._jobs.pop(job_id, None))

    async def _run_once(self, job: Job, delay: float, callback: JobCallback) -> None:
        await asyncio.sleep(delay)
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception(f"Job {job.kind.value} for {job.owner} failed")

    async def _run_every(self, job: Job, first_delay: float, callback: JobCallback) -> None:
        await asyncio.sleep(first_delay)
        while True:
            try:
                done = await callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                # A failing tick must not kill the loop; the next tick retries.
                self.logger.exception(f"Job {job.kind.value} for {job.owner} failed")
                done = False
            if done or job.id not in self._jobs:
                return
            job.next_fire = time.time() + job.interval
            await asyncio.sleep(job.interval)

    def cancel(self, job: Job) -> None:
        if job.task is not None and not job.task.done() and job.task is not asyncio.current_task():
            job.task.cancel()
        self._jobs.pop(job.id, None)

    def cancel_owner(self, owner: str, kind: Optional[JobKind] = None) -> int:
        """
        Cancels every pending job of `owner` (optionally only one kind).
        Safe to call repeatedly. A job that calls this on its own owner is
        detached rather than cancelled, so it can finish its current tick.
        """
        cancelled = 0
        for job in self.jobs(owner):
            if kind is not None and job.kind != kind:
                continue
            self.cancel(job)
            cancelled += 1
        return cancelled

    def jobs(self, owner: Optional[str] = None) -> List[Job]:
        return [j for j in self._jobs.values() if owner is None or j.owner == owner]

    def next_fire_time(self, owner: str, kind: Optional[JobKind] = None) -> Optional[float]:
        times = [j.next_fire for j in self.jobs(owner) if kind is None or j.kind == kind]
        return min(times) if times else None

    async def shutdown(self) -> None:
        tasks = [j.task for j in self._jobs.values() if j.task is not None and not j.task.done()]
        for t in tasks:
            t.cancel()
        self._jobs.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
