from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger


@dataclass
class _ScheduledJob:
    key: str
    interval_s: float
    job: Callable[[], None]
    stop_event: threading.Event
    thread: threading.Thread | None = None


class JobScheduler:
    """Registry of periodic jobs keyed by tenant or organization id.

    ``start`` and ``stop`` are idempotent. Jobs run on daemon threads and a
    failing run is logged without ending the loop.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, _ScheduledJob] = {}
        self._lock = threading.Lock()

    def _run(self, scheduled: _ScheduledJob) -> None:
        while not scheduled.stop_event.wait(scheduled.interval_s):
            try:
                scheduled.job()
            except Exception:
                logger.bind(event="job_failed", job=scheduled.key).exception("scheduled job {} failed", scheduled.key)

    def start(self, key: str, interval_s: float, job: Callable[[], None]) -> bool:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        with self._lock:
            existing = self._jobs.get(key)
            if existing is not None and existing.thread is not None and existing.thread.is_alive():
                return False
            stop_event = threading.Event()
            scheduled = _ScheduledJob(
                key=key,
                interval_s=interval_s,
                job=job,
                stop_event=stop_event,
            )
            scheduled.thread = threading.Thread(
                target=self._run,
                args=(scheduled,),
                name=f"job-{key}",
                daemon=True,
            )
            self._jobs[key] = scheduled
            scheduled.thread.start()
        logger.bind(event="job_started", job=key).info("scheduled job {} every {}s", key, interval_s)
        return True

    def stop(self, key: str, timeout: float | None = 5.0) -> bool:
        with self._lock:
            scheduled = self._jobs.pop(key, None)
        if scheduled is None:
            return False
        scheduled.stop_event.set()
        if scheduled.thread is not None and scheduled.thread is not threading.current_thread():
            scheduled.thread.join(timeout)
        logger.bind(event="job_stopped", job=key).info("stopped job {}", key)
        return True

    def stop_all(self) -> None:
        with self._lock:
            keys = list(self._jobs)
        for key in keys:
            self.stop(key)

    def is_running(self, key: str) -> bool:
        with self._lock:
            scheduled = self._jobs.get(key)
        return scheduled is not None and scheduled.thread is not None and scheduled.thread.is_alive()

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._jobs)


scheduler = JobScheduler()
